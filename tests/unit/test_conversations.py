from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio

from chat_sync.application.exceptions import SnapshotLoadFailed, ValidationError
from chat_sync.domain.entities.message import FileRef
from chat_sync.domain.value_objects.enums import ConversationKind, MessageKind
from chat_sync.services.conversations import ConversationDirectory
from tests.conftest import CONVERSATION_ID, T0, make_message


class _BrokenStore:
    async def list_conversations(self, user_id):
        raise ConnectionError("database unreachable")


@pytest_asyncio.fixture
async def directory(hub, alice):
    directory = ConversationDirectory(hub.store_for("alice", "Alice"), alice)
    await directory.load()
    directory.start()
    yield directory
    directory.stop()


async def _say(hub, user_id, text, conversation_id=CONVERSATION_ID):
    return await hub.store_for(user_id).insert_message(conversation_id, text, MessageKind.TEXT)


@pytest.mark.asyncio
async def test_load_lists_only_own_conversations(hub, directory):
    hub.add_conversation({"bob", "carol"}, conversation_id="private")

    await directory.load()

    assert [c.id for c in directory.list()] == [CONVERSATION_ID]
    assert directory.get(CONVERSATION_ID).display_name == "Team"


@pytest.mark.asyncio
async def test_load_failure_is_reported(alice):
    directory = ConversationDirectory(_BrokenStore(), alice)

    result = await directory.load()

    assert not result.success
    assert isinstance(result.error, SnapshotLoadFailed)


@pytest.mark.asyncio
async def test_incoming_messages_bump_unread_and_preview(hub, directory):
    await _say(hub, "bob", "first")
    await _say(hub, "bob", "second")

    conversation = directory.get(CONVERSATION_ID)
    assert conversation.unread_count == 2
    assert conversation.last_message_preview == "second"


@pytest.mark.asyncio
async def test_own_messages_do_not_count_as_unread(hub, directory):
    await _say(hub, "bob", "question?")
    await _say(hub, "alice", "answer")

    assert directory.get(CONVERSATION_ID).unread_count == 0


@pytest.mark.asyncio
async def test_focused_conversation_stays_read(hub, directory):
    await _say(hub, "bob", "before focus")

    directory.set_focus(CONVERSATION_ID)
    assert directory.get(CONVERSATION_ID).unread_count == 0

    await _say(hub, "bob", "while focused")
    assert directory.get(CONVERSATION_ID).unread_count == 0

    directory.set_focus(None)
    await _say(hub, "bob", "after")
    assert directory.get(CONVERSATION_ID).unread_count == 1


@pytest.mark.asyncio
async def test_unread_survives_reload(hub, directory):
    await _say(hub, "bob", "ping")

    await directory.load()

    assert directory.get(CONVERSATION_ID).unread_count == 1


def test_same_message_is_counted_once(hub, alice):
    directory = ConversationDirectory(hub.store_for("alice"), alice)
    directory._by_id = {CONVERSATION_ID: hub.conversations[CONVERSATION_ID]}
    message = make_message(content="dup")

    assert directory.apply_message(message) is True
    assert directory.apply_message(message) is False
    assert directory.get(CONVERSATION_ID).unread_count == 1


def test_older_message_does_not_replace_preview(hub, alice):
    directory = ConversationDirectory(hub.store_for("alice"), alice)
    directory._by_id = {CONVERSATION_ID: hub.conversations[CONVERSATION_ID]}

    directory.apply_message(make_message(content="newest", offset=10))
    directory.apply_message(make_message(content="older", offset=5))

    conversation = directory.get(CONVERSATION_ID)
    assert conversation.last_message_preview == "newest"
    assert conversation.last_message_at == T0 + timedelta(seconds=10)
    assert conversation.unread_count == 2


def test_file_preview_uses_file_name(hub, alice):
    directory = ConversationDirectory(hub.store_for("alice"), alice)
    directory._by_id = {CONVERSATION_ID: hub.conversations[CONVERSATION_ID]}

    directory.apply_message(
        make_message(
            kind=MessageKind.FILE,
            content="https://files.example/q3.xlsx",
            file=FileRef(url="https://files.example/q3.xlsx", name="q3.xlsx"),
        )
    )

    assert directory.get(CONVERSATION_ID).last_message_preview == "q3.xlsx"


@pytest.mark.asyncio
async def test_create_direct_conversation(hub, directory):
    conversation = await directory.create(ConversationKind.DIRECT, "", {"bob"})

    assert conversation.participant_ids == frozenset({"alice", "bob"})
    assert conversation.display_name == "Unnamed Chat"
    assert directory.get(conversation.id) is not None
    assert conversation.id in hub.conversations


@pytest.mark.asyncio
async def test_direct_conversation_needs_two_participants(directory):
    with pytest.raises(ValidationError):
        await directory.create(ConversationKind.DIRECT, "crowd", {"bob", "carol"})


@pytest.mark.asyncio
async def test_conversation_created_by_someone_else_appears(hub, directory):
    created = await hub.store_for("bob").create_conversation(
        ConversationKind.GROUP, "Bob's room", frozenset({"alice"}),
    )

    assert directory.get(created.id).display_name == "Bob's room"


@pytest.mark.asyncio
async def test_conversation_without_me_is_not_listed(hub, directory):
    await hub.store_for("bob").create_conversation(
        ConversationKind.GROUP, "Secret", frozenset({"carol"}),
    )

    assert [c.id for c in directory.list()] == [CONVERSATION_ID]


@pytest.mark.asyncio
async def test_list_is_ordered_by_latest_activity(hub, directory):
    other = await directory.create(ConversationKind.GROUP, "Other", {"bob"})
    assert directory.list()[0].id == other.id

    await _say(hub, "bob", "bump")

    assert [c.id for c in directory.list()] == [CONVERSATION_ID, other.id]
