"""Backend wiring: Redis + PostgreSQL, or the in-process hub in demo mode."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import redis.asyncio as aioredis

from chat_sync.application.dto.session import Session
from chat_sync.application.ports.transport import Transport
from chat_sync.config import Settings
from chat_sync.infrastructure.bus.change_feed import RedisChangeFeed
from chat_sync.infrastructure.db.session import create_engine, create_session_factory
from chat_sync.infrastructure.db.store import SqlAlchemyStore
from chat_sync.infrastructure.memory.store import InMemoryHub
from chat_sync.infrastructure.memory.transport import LoopbackHub, LoopbackTransport
from chat_sync.infrastructure.transport.redis_transport import RedisTransport
from chat_sync.services.client import ChatClient
from chat_sync.services.demo_peer import DemoPeer

logger = logging.getLogger(__name__)

DEMO_PEER_ID = "demo-peer"
DEMO_PEER_NAME = "Demo Peer"


@dataclass(slots=True)
class Backend:
    transport: Transport
    store: Any
    # set when change events travel over Redis and may need a catch-up
    feed: RedisChangeFeed | None = None


def build_demo_peer(
    settings: Settings, hub: InMemoryHub, loopback: LoopbackHub,
) -> DemoPeer:
    session = Session(user_id=DEMO_PEER_ID, display_name=DEMO_PEER_NAME)
    store = hub.store_for(session.user_id, session.display_name)
    return DemoPeer(
        ChatClient(LoopbackTransport(loopback), store, settings),
        session,
        store,
        min_delay=settings.DEMO_REPLY_MIN_DELAY,
        max_delay=settings.DEMO_REPLY_MAX_DELAY,
    )


@asynccontextmanager
async def open_backend(
    settings: Settings,
    session: Session,
    *,
    conversation_id: str | None = None,
) -> AsyncIterator[Backend]:
    """Startup / shutdown lifecycle of the adapters for one session."""
    if settings.DEMO_MODE:
        hub = InMemoryHub()
        loopback = LoopbackHub()
        if conversation_id is not None:
            hub.add_conversation(
                {session.user_id, DEMO_PEER_ID}, conversation_id=conversation_id,
            )
        peer = build_demo_peer(settings, hub, loopback)
        await peer.start()
        logger.info("Demo mode: using the in-process backend")
        try:
            yield Backend(
                transport=LoopbackTransport(loopback),
                store=hub.store_for(session.user_id, session.display_name, session.avatar_url),
            )
        finally:
            await peer.stop()
        return

    redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    logger.info("Redis connection pool created")
    feed = RedisChangeFeed(
        redis,
        settings.REDIS_CHANGES_CHANNEL,
        session.user_id,
        restart_delay=settings.RECONNECT_BASE_DELAY,
        max_restart_delay=settings.RECONNECT_MAX_DELAY,
    )
    engine = create_engine(settings)
    try:
        await feed.start()
        yield Backend(
            transport=RedisTransport(
                redis,
                signal_channel=settings.REDIS_SIGNAL_CHANNEL,
                presence_channel=settings.REDIS_PRESENCE_CHANNEL,
                presence_ttl=settings.ONLINE_LEASE_SECONDS,
            ),
            store=SqlAlchemyStore(create_session_factory(engine), feed, session),
            feed=feed,
        )
    finally:
        await feed.stop()
        await engine.dispose()
        await redis.aclose()
        logger.info("Redis connection pool closed")


def create_client(settings: Settings, backend: Backend) -> ChatClient:
    client = ChatClient(backend.transport, backend.store, settings)
    if backend.feed is not None:
        backend.feed.add_restore_listener(client.resync)
    return client
