"""Realtime transport over Redis: Pub/Sub for signals, expiring keys for presence."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

import redis.asyncio as aioredis

from chat_sync.application.dto.session import Session
from chat_sync.application.ports.transport import (
    CLIENT_DISCONNECT,
    EVENT_CONNECT,
    EVENT_DISCONNECT,
    SERVER_DISCONNECT,
    TRANSPORT_ERROR,
)
from chat_sync.infrastructure.bus.redis_pubsub import RedisPubSubPublisher, RedisPubSubSubscriber
from chat_sync.infrastructure.bus.serializer import serialize_event
from chat_sync.infrastructure.transport.base import CallbackRegistry

logger = logging.getLogger(__name__)

PRESENCE_CHANGED = "presence.changed"
# published by operators to force a user offline
KICK = "kick"


class RedisTransport(CallbackRegistry):
    """One client connection.

    Broadcast events skip the connection that sent them. Presence entries are
    keys with a TTL that each ``track`` call rewrites, so an entry outlives its
    client by at most one TTL. Every change is announced on the presence
    channel and each client re-reads the full state.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        *,
        signal_channel: str,
        presence_channel: str,
        presence_ttl: float = 30.0,
    ) -> None:
        super().__init__()
        self._redis = redis
        self._publisher = RedisPubSubPublisher(redis)
        self._signal_channel = signal_channel
        self._presence_channel = presence_channel
        self._presence_ttl = presence_ttl
        self._connection_id = uuid.uuid4().hex
        self._session: Session | None = None
        self._subscribers: list[RedisPubSubSubscriber] = []
        self._tracked: dict[str, Any] | None = None
        self._drop_task: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        return bool(self._subscribers)

    def _presence_key(self, session: Session) -> str:
        return f"{self._presence_channel}:{session.presence_key}"

    async def connect(self, session: Session) -> None:
        await self._redis.ping()
        self._session = session
        self._subscribers = [
            RedisPubSubSubscriber(
                self._redis, self._signal_channel, self._on_signal, on_error=self._on_lost,
            ),
            RedisPubSubSubscriber(
                self._redis, self._presence_channel, self._on_presence, on_error=self._on_lost,
            ),
        ]
        try:
            for subscriber in self._subscribers:
                await subscriber.start()
        except Exception:
            await self._teardown()
            raise
        logger.info("Realtime transport connected as %s", self._connection_id)
        await self.fire(EVENT_CONNECT, None)
        await self._sync()

    async def close(self) -> None:
        if not self.connected:
            return
        try:
            await self.untrack()
        except Exception:
            logger.warning("Untrack on close failed", exc_info=True)
        await self._teardown()
        await self.fire(EVENT_DISCONNECT, CLIENT_DISCONNECT)

    async def emit(self, event: str, payload: dict[str, Any]) -> None:
        await self._publisher.publish(
            self._signal_channel, event, payload, origin=self._connection_id,
        )

    async def track(self, payload: dict[str, Any]) -> None:
        if self._session is None:
            return
        self._tracked = dict(payload)
        await self._write_presence()
        await self._announce()

    async def untrack(self) -> None:
        self._tracked = None
        if self._session is not None:
            await self._redis.delete(self._presence_key(self._session))
            await self._announce()

    # -- internals ---------------------------------------------------------

    async def _write_presence(self) -> None:
        assert self._session is not None and self._tracked is not None
        await self._redis.set(
            self._presence_key(self._session),
            serialize_event(PRESENCE_CHANGED, self._tracked),
            px=int(self._presence_ttl * 1000),
        )

    async def _announce(self) -> None:
        await self._publisher.publish(
            self._presence_channel, PRESENCE_CHANGED, {}, origin=self._connection_id,
        )

    async def _sync(self) -> None:
        state: dict[str, list[dict[str, Any]]] = {}
        prefix = f"{self._presence_channel}:"
        keys = [key async for key in self._redis.scan_iter(match=f"{prefix}*")]
        if keys:
            for key, raw in zip(keys, await self._redis.mget(keys)):
                if raw is None:
                    continue
                try:
                    meta = json.loads(raw)["data"]
                except (ValueError, KeyError, TypeError):
                    logger.warning("Dropping unreadable presence entry %s", key)
                    continue
                state[key.removeprefix(prefix)] = [meta]
        await self.fire_sync(state)

    async def _on_presence(
        self, event_type: str, data: dict[str, Any], envelope: dict[str, Any],
    ) -> None:
        await self._sync()

    async def _on_signal(
        self, event_type: str, data: dict[str, Any], envelope: dict[str, Any],
    ) -> None:
        if envelope.get("origin") == self._connection_id:
            return
        if event_type == KICK:
            if self._session is not None and data.get("user_id") == self._session.user_id:
                logger.warning("Server ended the session for user %s", self._session.user_id)
                self._schedule_drop(SERVER_DISCONNECT)
            return
        await self.fire(event_type, data)

    async def _on_lost(self, exc: Exception) -> None:
        self._schedule_drop(TRANSPORT_ERROR)

    def _schedule_drop(self, reason: str) -> None:
        # called from inside a subscriber task, which _teardown cancels
        if self._drop_task is None or self._drop_task.done():
            self._drop_task = asyncio.create_task(self._drop(reason), name="transport-drop")

    async def _drop(self, reason: str) -> None:
        if not self.connected:
            return
        await self._teardown()
        await self.fire(EVENT_DISCONNECT, reason)

    async def _teardown(self) -> None:
        subscribers, self._subscribers = self._subscribers, []
        for subscriber in subscribers:
            if subscriber.running:
                await subscriber.stop()
