"""Loopback realtime transport: every client in the process shares one hub."""
from __future__ import annotations

from typing import Any

from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import TransportUnavailable
from chat_sync.application.ports.transport import (
    CLIENT_DISCONNECT,
    EVENT_CONNECT,
    EVENT_DISCONNECT,
    SERVER_DISCONNECT,
    TRANSPORT_ERROR,
)
from chat_sync.infrastructure.transport.base import CallbackRegistry


class LoopbackHub:
    """Routes broadcast events and presence state between connected transports.

    Broadcasts skip the sender; presence sync goes to everyone, sender included.
    ``fail_next_connects`` makes the next N connect attempts raise.
    """

    def __init__(self) -> None:
        self._connected: list[LoopbackTransport] = []
        self._presence: dict[str, list[dict[str, Any]]] = {}
        self.fail_next_connects = 0

    @property
    def connected(self) -> list[LoopbackTransport]:
        return list(self._connected)

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        return {key: [dict(m) for m in metas] for key, metas in self._presence.items()}

    async def join(self, transport: LoopbackTransport) -> None:
        if self.fail_next_connects > 0:
            self.fail_next_connects -= 1
            raise TransportUnavailable("Loopback hub refused the connection")
        if transport not in self._connected:
            self._connected.append(transport)

    async def leave(self, transport: LoopbackTransport) -> None:
        if transport in self._connected:
            self._connected.remove(transport)
        if transport.presence_key and self._presence.pop(transport.presence_key, None) is not None:
            await self.sync()

    async def broadcast(self, sender: LoopbackTransport, event: str, payload: Any) -> None:
        for transport in list(self._connected):
            if transport is not sender:
                await transport.fire(event, payload)

    async def set_presence(self, key: str, meta: dict[str, Any] | None) -> None:
        if meta is None:
            self._presence.pop(key, None)
        else:
            self._presence[key] = [dict(meta)]
        await self.sync()

    async def sync(self) -> None:
        state = self.presence_state()
        for transport in list(self._connected):
            await transport.fire_sync(state)

    async def drop(self, transport: LoopbackTransport, reason: str = TRANSPORT_ERROR) -> None:
        """Sever a client as if the network failed (or the server kicked it)."""
        await self.leave(transport)
        await transport.fire(EVENT_DISCONNECT, reason)

    async def kick(self, transport: LoopbackTransport) -> None:
        await self.drop(transport, SERVER_DISCONNECT)


class LoopbackTransport(CallbackRegistry):
    def __init__(self, hub: LoopbackHub) -> None:
        super().__init__()
        self._hub = hub
        self.session: Session | None = None
        self.emitted: list[tuple[str, Any]] = []

    @property
    def presence_key(self) -> str | None:
        return self.session.presence_key if self.session else None

    async def connect(self, session: Session) -> None:
        self.session = session
        await self._hub.join(self)
        await self.fire(EVENT_CONNECT, None)
        await self.fire_sync(self._hub.presence_state())

    async def close(self) -> None:
        if self not in self._hub.connected:
            return
        await self._hub.leave(self)
        await self.fire(EVENT_DISCONNECT, CLIENT_DISCONNECT)

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        self.emitted.append((event, payload))
        await self._hub.broadcast(self, event, payload)

    async def track(self, payload: dict[str, Any]) -> None:
        if self.presence_key:
            await self._hub.set_presence(self.presence_key, payload)

    async def untrack(self) -> None:
        if self.presence_key:
            await self._hub.set_presence(self.presence_key, None)
