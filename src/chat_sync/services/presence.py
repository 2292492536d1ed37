"""Online and typing presence, modelled as leases refreshed by heartbeats."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from chat_sync.application.dto.session import Session
from chat_sync.application.dto.signals import (
    EVENT_ONLINE_USERS,
    EVENT_TYPING,
    PresenceMeta,
    TypingSignal,
)
from chat_sync.application.ports.clock import Clock, SystemClock, elapsed
from chat_sync.domain.entities.presence import PresenceRecord
from chat_sync.domain.value_objects.enums import ConnectionState
from chat_sync.domain.value_objects.ids import TypingKey
from chat_sync.services.connection import ConnectionManager

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Derives who is online and who is typing from transport traffic.

    A record without a heartbeat inside its lease is treated as absent, so a
    lost "stopped typing" signal never leaves an indicator stuck on. While
    connected the tracker re-tracks itself every ``heartbeat_interval``
    seconds; peers age each entry from the ``heartbeat_at`` it carries.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        session: Session,
        *,
        clock: Clock | None = None,
        typing_lease: timedelta = timedelta(seconds=3),
        online_lease: timedelta = timedelta(seconds=30),
        heartbeat_interval: float | None = None,
    ) -> None:
        self._connection = connection
        self._session = session
        self._clock = clock or SystemClock()
        self._typing_lease = typing_lease
        self._online_lease = online_lease
        if heartbeat_interval is None:
            heartbeat_interval = online_lease.total_seconds() / 2
        self._heartbeat_interval = heartbeat_interval
        self._online: dict[str, PresenceRecord] = {}
        self._typing: dict[TypingKey, PresenceRecord] = {}
        self._online_since: datetime | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._active = False

    def start(self) -> None:
        if self._active:
            return
        self._active = True
        self._connection.on_sync(self._on_sync)
        self._connection.on(EVENT_TYPING, self._on_typing)
        self._connection.on(EVENT_ONLINE_USERS, self._on_online_users)
        self._connection.add_state_listener(self._on_state)

    async def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._stop_heartbeat()
        self._connection.off_sync(self._on_sync)
        self._connection.off(EVENT_TYPING, self._on_typing)
        self._connection.off(EVENT_ONLINE_USERS, self._on_online_users)
        self._connection.remove_state_listener(self._on_state)
        await self._connection.untrack()
        self._online.clear()
        self._typing.clear()

    async def track_self(self) -> bool:
        """Publish this session's presence entry with a fresh heartbeat."""
        now = self._clock.now()
        return await self._connection.track(
            {
                "user_id": self._session.user_id,
                "display_name": self._session.display_name,
                "online_at": (self._online_since or now).isoformat(),
                "heartbeat_at": now.isoformat(),
            }
        )

    # -- queries -----------------------------------------------------------

    def is_online(self, user_id: str) -> bool:
        record = self._online.get(user_id)
        return record is not None and record.is_alive(self._clock.now(), self._online_lease)

    def online_users(self) -> list[str]:
        now = self._clock.now()
        return sorted(
            uid for uid, rec in self._online.items() if rec.is_alive(now, self._online_lease)
        )

    def is_typing(self, user_id: str, conversation_id: str) -> bool:
        record = self._typing.get(TypingKey(conversation_id, user_id))
        return record is not None and record.is_alive(self._clock.now(), self._typing_lease)

    def typing_users(self, conversation_id: str) -> list[PresenceRecord]:
        """Other participants currently typing in a conversation."""
        self.prune()
        return sorted(
            (
                rec
                for key, rec in self._typing.items()
                if key.conversation_id == conversation_id
                and key.user_id != self._session.user_id
            ),
            key=lambda r: r.last_heartbeat_at,
        )

    def prune(self) -> int:
        now = self._clock.now()
        expired_typing = [
            key for key, rec in self._typing.items() if not rec.is_alive(now, self._typing_lease)
        ]
        for key in expired_typing:
            del self._typing[key]
        expired_online = [
            uid for uid, rec in self._online.items() if not rec.is_alive(now, self._online_lease)
        ]
        for uid in expired_online:
            del self._online[uid]
        return len(expired_typing) + len(expired_online)

    # -- handlers ----------------------------------------------------------

    async def _on_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new == ConnectionState.CONNECTED:
            # a fresh connection has no memory of what was tracked before
            self._online_since = self._clock.now()
            await self.track_self()
            self._start_heartbeat()
        else:
            await self._stop_heartbeat()

    def _start_heartbeat(self) -> None:
        if self._heartbeat is None or self._heartbeat.done():
            self._heartbeat = asyncio.create_task(
                self._heartbeat_loop(), name=f"presence-heartbeat-{self._session.user_id}",
            )

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat = self._heartbeat, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self._heartbeat_interval)
            try:
                await self.track_self()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Presence heartbeat for %s failed", self._session.user_id)

    def _stamp(self, meta: PresenceMeta, now: datetime) -> datetime:
        stamp = meta.heartbeat_at or meta.online_at
        if stamp is None:
            return now
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        # a peer clock running ahead must not extend its own lease
        return min(stamp, now)

    async def _on_sync(self, state: dict[str, list[dict[str, Any]]]) -> None:
        if not self._active:
            return
        now = self._clock.now()
        online: dict[str, PresenceRecord] = {}
        typing: dict[TypingKey, PresenceRecord] = {}
        for metas in state.values():
            for raw in metas:
                try:
                    meta = PresenceMeta.model_validate(raw)
                except ValidationError:
                    logger.warning("Dropping malformed presence entry: %r", raw)
                    continue
                stamp = self._stamp(meta, now)
                online[meta.user_id] = PresenceRecord(
                    user_id=meta.user_id,
                    last_heartbeat_at=stamp,
                    display_name=meta.display_name,
                )
                if meta.is_typing and meta.conversation_id:
                    typing[TypingKey(meta.conversation_id, meta.user_id)] = PresenceRecord(
                        user_id=meta.user_id,
                        last_heartbeat_at=stamp,
                        conversation_id=meta.conversation_id,
                        display_name=meta.display_name,
                    )
        self._online = online
        # typing leases from explicit signals survive a sync that doesn't mention them
        self._typing.update(typing)
        logger.debug("Presence sync: %d online", len(online))

    async def _on_online_users(self, user_ids: Any) -> None:
        if not self._active:
            return
        if not isinstance(user_ids, list):
            logger.warning("Dropping malformed online-users event: %r", user_ids)
            return
        now = self._clock.now()
        self._online = {
            str(uid): PresenceRecord(user_id=str(uid), last_heartbeat_at=now)
            for uid in user_ids
        }

    async def _on_typing(self, payload: Any) -> None:
        if not self._active:
            return
        try:
            signal = TypingSignal.model_validate(payload)
        except ValidationError:
            logger.warning("Dropping malformed typing event: %r", payload)
            return
        key = TypingKey(signal.conversation_id, signal.user_id)
        if signal.is_typing:
            self._typing[key] = PresenceRecord(
                user_id=signal.user_id,
                last_heartbeat_at=self._clock.now(),
                conversation_id=signal.conversation_id,
                display_name=signal.display_name,
            )
        else:
            self._typing.pop(key, None)


class TypingNotifier:
    """Outbound side of typing indicators.

    Keystrokes inside the debounce window do not retransmit; a stop signal goes
    out after ``idle`` seconds without keystrokes or immediately via ``stop``.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        session: Session,
        *,
        clock: Clock | None = None,
        debounce: float = 1.0,
        idle: float = 2.0,
    ) -> None:
        self._connection = connection
        self._session = session
        self._clock = clock or SystemClock()
        self._debounce = timedelta(seconds=debounce)
        self._idle = idle
        self._last_sent: dict[str, datetime] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def is_typing(self, conversation_id: str) -> bool:
        return conversation_id in self._last_sent

    async def keystroke(self, conversation_id: str) -> bool:
        """Register a keystroke. Returns True when a heartbeat went out."""
        now = self._clock.now()
        last = self._last_sent.get(conversation_id)
        sent = False
        if last is None or elapsed(self._clock, last) >= self._debounce:
            sent = await self._signal(conversation_id, True)
            if sent:
                self._last_sent[conversation_id] = now
        self._schedule_idle_stop(conversation_id)
        return sent

    async def stop(self, conversation_id: str) -> None:
        timer = self._timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()
        if self._last_sent.pop(conversation_id, None) is not None:
            await self._signal(conversation_id, False)

    async def stop_all(self) -> None:
        for conversation_id in list(self._last_sent):
            await self.stop(conversation_id)
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    def _schedule_idle_stop(self, conversation_id: str) -> None:
        timer = self._timers.pop(conversation_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[conversation_id] = loop.call_later(
            self._idle, self._on_idle, conversation_id,
        )

    def _on_idle(self, conversation_id: str) -> None:
        self._timers.pop(conversation_id, None)
        task = asyncio.create_task(
            self.stop(conversation_id), name=f"typing-stop-{conversation_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _signal(self, conversation_id: str, is_typing: bool) -> bool:
        return await self._connection.emit(
            EVENT_TYPING,
            {
                "conversation_id": conversation_id,
                "user_id": self._session.user_id,
                "display_name": self._session.display_name,
                "is_typing": is_typing,
            },
        )
