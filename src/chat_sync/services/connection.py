"""Client-side owner of the realtime transport connection."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import TransportUnavailable
from chat_sync.application.ports.transport import (
    EVENT_CONNECT_ERROR,
    EVENT_DISCONNECT,
    SERVER_DISCONNECT,
    EventCallback,
    SyncCallback,
    Transport,
)
from chat_sync.domain.value_objects.enums import ConnectionState

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, ConnectionState], Coroutine[Any, Any, None]]


def calc_backoff(attempt: int, base: float, cap: float) -> float:
    return min(base * (2 ** attempt), cap)


@dataclass(frozen=True, slots=True)
class ConnectionHandle:
    user_id: str
    generation: int


class ConnectionManager:
    """Keeps one transport connection per session alive.

    Unexpected closes are retried with capped exponential backoff; a
    server-initiated disconnect is final. After ``max_attempts`` failed
    reconnects the manager stays ``disconnected`` with ``last_error`` set.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
    ) -> None:
        self._transport = transport
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts

        self._state = ConnectionState.DISCONNECTED
        self._session: Session | None = None
        self._generation = 0
        self._attempts = 0
        self._closing = False
        self._reconnect_task: asyncio.Task[None] | None = None
        self._listeners: list[StateListener] = []
        self.last_error: TransportUnavailable | None = None

        transport.on(EVENT_DISCONNECT, self._on_transport_disconnect)
        transport.on(EVENT_CONNECT_ERROR, self._on_transport_error)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_state_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_state_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self, session: Session) -> ConnectionHandle:
        if self._session == session and self._state != ConnectionState.DISCONNECTED:
            return ConnectionHandle(session.user_id, self._generation)
        if self._session is not None:
            await self.disconnect()

        self._session = session
        self._closing = False
        self._attempts = 0
        self.last_error = None
        self._generation += 1
        await self._open()
        return ConnectionHandle(session.user_id, self._generation)

    async def disconnect(self) -> None:
        self._closing = True
        await self._cancel_reconnect()
        try:
            await self._transport.close()
        except Exception:
            logger.warning("Transport close failed", exc_info=True)
        self._session = None
        self._attempts = 0
        await self._set_state(ConnectionState.DISCONNECTED)

    # -- transport proxies -------------------------------------------------

    def on(self, event: str, callback: EventCallback) -> None:
        self._transport.on(event, callback)

    def off(self, event: str, callback: EventCallback) -> None:
        self._transport.off(event, callback)

    def on_sync(self, callback: SyncCallback) -> None:
        self._transport.on_sync(callback)

    def off_sync(self, callback: SyncCallback) -> None:
        self._transport.off_sync(callback)

    async def emit(self, event: str, payload: dict[str, Any]) -> bool:
        if not self.is_connected:
            logger.debug("Not connected, dropping %s", event)
            return False
        await self._transport.emit(event, payload)
        return True

    async def track(self, payload: dict[str, Any]) -> bool:
        if not self.is_connected:
            return False
        await self._transport.track(payload)
        return True

    async def untrack(self) -> bool:
        if not self.is_connected:
            return False
        await self._transport.untrack()
        return True

    # -- internals ---------------------------------------------------------

    async def _open(self) -> None:
        assert self._session is not None
        await self._set_state(ConnectionState.CONNECTING)
        try:
            await self._transport.connect(self._session)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Transport connect failed: %s", exc)
            await self._schedule_reconnect(str(exc))
            return

        if self._closing:
            await self._transport.close()
            return
        self._attempts = 0
        self.last_error = None
        await self._set_state(ConnectionState.CONNECTED)

    async def _schedule_reconnect(self, reason: str) -> None:
        if self._closing or self._session is None:
            return
        if self._attempts >= self._max_attempts:
            self.last_error = TransportUnavailable(
                f"Gave up after {self._attempts} reconnect attempts: {reason}"
            )
            logger.error("Transport unavailable: %s", self.last_error.detail)
            await self._set_state(ConnectionState.DISCONNECTED)
            return

        delay = calc_backoff(self._attempts, self._base_delay, self._max_delay)
        self._attempts += 1
        logger.info(
            "Reconnecting in %.2fs (attempt %d/%d)",
            delay, self._attempts, self._max_attempts,
        )
        await self._set_state(ConnectionState.CONNECTING)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(delay), name="chat-reconnect",
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._closing or self._session is None:
            return
        await self._open()

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _on_transport_disconnect(self, reason: Any) -> None:
        if self._closing or self._state != ConnectionState.CONNECTED:
            return
        reason = str(reason or "")
        logger.info("Transport disconnected: %s", reason)
        if reason == SERVER_DISCONNECT:
            self.last_error = TransportUnavailable("Disconnected by server")
            await self._set_state(ConnectionState.DISCONNECTED)
            return
        await self._set_state(ConnectionState.DISCONNECTED)
        await self._schedule_reconnect(reason)

    async def _on_transport_error(self, reason: Any) -> None:
        logger.warning("Transport connect error: %s", reason)

    async def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if old == new:
            return
        self._state = new
        logger.info("Connection state %s -> %s", old, new)
        for listener in list(self._listeners):
            try:
                await listener(old, new)
            except Exception:
                logger.exception("Connection state listener failed")
