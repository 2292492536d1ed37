"""Redis Pub/Sub: publish side and subscriber background task."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Coroutine

import redis.asyncio as aioredis

from chat_sync.infrastructure.bus.serializer import deserialize_event, serialize_event

logger = logging.getLogger(__name__)


class RedisPubSubPublisher:
    def __init__(self, redis: aioredis.Redis) -> None:
        self._redis = redis

    async def publish(
        self,
        channel: str,
        event_type: str,
        payload: dict[str, Any],
        *,
        audience: list[str] | None = None,
        origin: str | None = None,
    ) -> None:
        raw = serialize_event(event_type, payload, audience=audience, origin=origin)
        await self._redis.publish(channel, raw)


OnEventCallback = Callable[[str, dict[str, Any], dict[str, Any]], Coroutine[Any, Any, None]]
OnErrorCallback = Callable[[Exception], Coroutine[Any, Any, None]]


class RedisPubSubSubscriber:
    """Background task that listens to a Redis channel and dispatches events.

    A failing callback is logged and skipped. If the connection itself fails,
    the loop ends and ``on_error`` is awaited with the exception.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str,
        callback: OnEventCallback,
        *,
        on_error: OnErrorCallback | None = None,
    ) -> None:
        self._redis = redis
        self._channel = channel
        self._callback = callback
        self._on_error = on_error
        self._task: asyncio.Task[None] | None = None
        self._subscribed = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._subscribed.clear()
        self._task = asyncio.create_task(self._listen(), name=f"redis-pubsub-{self._channel}")
        await self._subscribed.wait()
        if self._task.done():
            # subscribe itself failed; surface it to the caller
            task, self._task = self._task, None
            task.result()
        logger.info("Redis Pub/Sub subscriber started on channel=%s", self._channel)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Redis Pub/Sub subscriber stopped on channel=%s", self._channel)

    async def restart(self) -> None:
        """Replace a listen task that ended, e.g. after the connection dropped."""
        await self.stop()
        await self.start()

    async def _listen(self) -> None:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self._channel)
        except BaseException:
            await pubsub.aclose()
            raise
        finally:
            self._subscribed.set()
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    event_type, data, envelope = deserialize_event(message["data"])
                    await self._callback(event_type, data, envelope)
                except Exception:
                    logger.exception("Error processing pubsub message on %s", self._channel)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Pub/Sub connection on %s lost: %s", self._channel, exc)
            if self._on_error is not None:
                await self._on_error(exc)
        finally:
            try:
                await pubsub.unsubscribe(self._channel)
            except Exception:
                logger.debug("Unsubscribe from %s failed", self._channel, exc_info=True)
            await pubsub.aclose()
