"""Row change feed over Redis Pub/Sub, fanned out to local subscribers."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

import redis.asyncio as aioredis

from chat_sync.application.ports.store import ChangeCallback, Unsubscribe
from chat_sync.infrastructure.bus.redis_pubsub import RedisPubSubPublisher, RedisPubSubSubscriber
from chat_sync.infrastructure.bus.serializer import change_event, split_change_event

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass(eq=False)
class _Listener:
    table: str
    filter: dict[str, str] | None
    callbacks: dict[str, ChangeCallback]
    active: bool = True

    def matches(self, table: str, row: dict[str, Any]) -> bool:
        if not self.active or table != self.table:
            return False
        return not self.filter or all(str(row.get(k)) == v for k, v in self.filter.items())


RestoreCallback = Callable[[], Coroutine[Any, Any, None]]


class RedisChangeFeed:
    """Publishes row changes after commit and delivers them to listeners.

    Each event carries an audience (the conversation's participants); a feed
    opened for one user only delivers events addressed to that user.

    When the Pub/Sub connection drops, the feed resubscribes with capped
    exponential backoff until it succeeds or is stopped. Listeners stay
    registered across the gap; restore callbacks run once it is back so
    consumers can catch up on what was published meanwhile.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str,
        user_id: str,
        *,
        restart_delay: float = 1.0,
        max_restart_delay: float = 30.0,
    ) -> None:
        self._publisher = RedisPubSubPublisher(redis)
        self._channel = channel
        self._user_id = user_id
        self._restart_delay = restart_delay
        self._max_restart_delay = max_restart_delay
        self._listeners: list[_Listener] = []
        self._restore_listeners: list[RestoreCallback] = []
        self._restart_task: asyncio.Task[None] | None = None
        self._stopped = True
        self._subscriber = RedisPubSubSubscriber(
            redis, channel, self._dispatch, on_error=self._on_lost,
        )

    async def start(self) -> None:
        self._stopped = False
        await self._subscriber.start()

    async def stop(self) -> None:
        self._stopped = True
        task, self._restart_task = self._restart_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._subscriber.stop()
        self._listeners.clear()
        self._restore_listeners.clear()

    def add_restore_listener(self, callback: RestoreCallback) -> None:
        self._restore_listeners.append(callback)

    def remove_restore_listener(self, callback: RestoreCallback) -> None:
        if callback in self._restore_listeners:
            self._restore_listeners.remove(callback)

    async def publish(
        self, table: str, change: str, row: dict[str, Any], audience: list[str],
    ) -> None:
        await self._publisher.publish(
            self._channel, change_event(table, change), row, audience=audience,
        )

    def subscribe(
        self,
        table: str,
        filter: dict[str, str] | None,
        on_insert: ChangeCallback,
        on_update: ChangeCallback,
        on_delete: ChangeCallback,
    ) -> Unsubscribe:
        listener = _Listener(
            table, filter, {INSERT: on_insert, UPDATE: on_update, DELETE: on_delete},
        )
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            listener.active = False
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def _dispatch(
        self, event_type: str, data: dict[str, Any], envelope: dict[str, Any],
    ) -> None:
        try:
            table, change = split_change_event(event_type)
        except ValueError:
            logger.warning("Ignoring non-change event %r on %s", event_type, self._channel)
            return
        audience = envelope.get("audience")
        if audience is not None and self._user_id not in audience:
            return
        for listener in list(self._listeners):
            if not listener.matches(table, data):
                continue
            callback = listener.callbacks.get(change)
            if callback is None:
                continue
            try:
                await callback(dict(data))
            except Exception:
                logger.exception("Change listener failed on %s", event_type)

    async def _on_lost(self, exc: Exception) -> None:
        # runs inside the dying listen task, so the restart gets its own task
        if self._stopped:
            return
        if self._restart_task is None or self._restart_task.done():
            self._restart_task = asyncio.create_task(
                self._restart(), name=f"change-feed-restart-{self._channel}",
            )

    async def _restart(self) -> None:
        attempt = 0
        while not self._stopped:
            delay = min(self._restart_delay * (2 ** attempt), self._max_restart_delay)
            await asyncio.sleep(delay)
            try:
                await self._subscriber.restart()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                attempt += 1
                logger.warning(
                    "Change feed on %s still down (attempt %d): %s", self._channel, attempt, exc,
                )
                continue
            logger.info(
                "Change feed on %s restored after %d failed attempt(s)", self._channel, attempt,
            )
            for callback in list(self._restore_listeners):
                try:
                    await callback()
                except Exception:
                    logger.exception("Change feed restore callback failed")
            return
