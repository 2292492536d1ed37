"""Shared test fixtures."""
from __future__ import annotations

import asyncio
import itertools
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from chat_sync.application.dto.session import Session
from chat_sync.config import Settings
from chat_sync.domain.entities.message import FileRef, Message
from chat_sync.domain.value_objects.enums import MessageKind, MessageStatus
from chat_sync.domain.value_objects.ids import TEMP_ID_PREFIX
from chat_sync.infrastructure.memory.store import InMemoryHub, InMemoryStore

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
CONVERSATION_ID = "conv-1"

_seq = itertools.count(1)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def alice() -> Session:
    return Session(user_id="alice", display_name="Alice")


@pytest.fixture
def bob() -> Session:
    return Session(user_id="bob", display_name="Bob")


@pytest.fixture
def fast_settings() -> Settings:
    return Settings(
        RECONNECT_BASE_DELAY=0.01,
        RECONNECT_MAX_DELAY=0.05,
        RECONNECT_MAX_ATTEMPTS=3,
        TYPING_IDLE_SECONDS=0.05,
        DEMO_MODE=True,
    )


def make_message(
    *,
    message_id: str | None = None,
    conversation_id: str = CONVERSATION_ID,
    sender_id: str = "bob",
    content: str = "hello",
    kind: MessageKind = MessageKind.TEXT,
    created_at: datetime | None = None,
    offset: float = 0.0,
    status: MessageStatus = MessageStatus.CONFIRMED,
    client_msg_id: str | None = None,
    edited_at: datetime | None = None,
    file: FileRef | None = None,
) -> Message:
    return Message(
        id=message_id or f"msg-{next(_seq)}",
        conversation_id=conversation_id,
        sender_id=sender_id,
        sender_display_name=sender_id.title(),
        content=content,
        kind=kind,
        created_at=(created_at or T0) + timedelta(seconds=offset),
        status=status,
        edited_at=edited_at,
        file=file,
        read_by=frozenset({sender_id}),
        client_msg_id=client_msg_id,
    )


def make_pending(*, sender_id: str = "alice", content: str = "hi", offset: float = 0.0, **kw: Any) -> Message:
    return make_message(
        message_id=kw.pop("message_id", f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"),
        sender_id=sender_id,
        content=content,
        offset=offset,
        status=MessageStatus.PENDING,
        **kw,
    )


def confirm(local: Message, *, message_id: str | None = None, delay: float = 0.5, **kw: Any) -> Message:
    """The row the store would hand back for a local write."""
    return replace(
        local,
        id=message_id or f"srv-{next(_seq)}",
        status=MessageStatus.CONFIRMED,
        created_at=local.created_at + timedelta(seconds=delay),
        **kw,
    )


@pytest.fixture
def hub(clock: FakeClock) -> InMemoryHub:
    hub = InMemoryHub(clock)
    hub.add_conversation({"alice", "bob"}, conversation_id=CONVERSATION_ID, display_name="Team")
    return hub


@dataclass
class FlakyStore:
    """Delegates to an ``InMemoryStore`` and fails on demand."""

    inner: InMemoryStore
    fail_inserts: int = 0
    fail_snapshots: int = 0
    fail_updates: int = 0
    insert_calls: list[dict[str, Any]] = field(default_factory=list)
    snapshot_calls: int = 0

    async def fetch_snapshot(self, conversation_id: str, limit: int) -> list[Message]:
        self.snapshot_calls += 1
        if self.fail_snapshots > 0:
            self.fail_snapshots -= 1
            raise ConnectionError("snapshot unavailable")
        return await self.inner.fetch_snapshot(conversation_id, limit)

    async def insert_message(
        self, conversation_id, content, kind, file=None, *, client_msg_id=None, replied_to=None,
    ):
        self.insert_calls.append(
            {
                "conversation_id": conversation_id,
                "content": content,
                "client_msg_id": client_msg_id,
                "replied_to": replied_to,
            }
        )
        if self.fail_inserts > 0:
            self.fail_inserts -= 1
            raise ConnectionError("network down")
        return await self.inner.insert_message(
            conversation_id,
            content,
            kind,
            file,
            client_msg_id=client_msg_id,
            replied_to=replied_to,
        )

    async def update_message(self, message_id: str, patch: dict[str, Any]) -> None:
        if self.fail_updates > 0:
            self.fail_updates -= 1
            raise TimeoutError()
        await self.inner.update_message(message_id, patch)

    async def delete_message(self, message_id: str) -> None:
        await self.inner.delete_message(message_id)

    def subscribe_changes(self, table, filter, on_insert, on_update, on_delete):
        return self.inner.subscribe_changes(table, filter, on_insert, on_update, on_delete)

    async def list_conversations(self, user_id: str):
        return await self.inner.list_conversations(user_id)

    async def create_conversation(self, kind, display_name, participant_ids):
        return await self.inner.create_conversation(kind, display_name, participant_ids)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until ``predicate`` holds; background tasks get to run in between."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
