from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from chat_sync.application.dto.changes import (
    message_to_row,
    parse_conversation,
    parse_deleted,
    parse_message,
    parse_patch,
)
from chat_sync.application.exceptions import MalformedEvent
from chat_sync.domain.value_objects.enums import ConversationKind, MessageKind, MessageStatus
from tests.conftest import make_message


def _row(**overrides):
    row = {
        "id": "m-1",
        "conversation_id": "conv-1",
        "sender_id": "bob",
        "content": "hi",
        "created_at": "2024-05-01T12:00:00",
    }
    row.update(overrides)
    return row


def test_message_row_defaults_and_naive_timestamps():
    message = parse_message(_row())

    assert message.status == MessageStatus.CONFIRMED
    assert message.kind == MessageKind.TEXT
    assert message.sender_display_name == "Unknown User"
    assert message.created_at == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
    assert message.read_by == frozenset({"bob"})


def test_file_columns_become_file_reference():
    message = parse_message(
        _row(kind="file", file_url="https://files.example/a.png", file_name="a.png", file_size=10)
    )

    assert message.file.name == "a.png"
    assert message.file.size == 10


def test_unknown_columns_are_ignored():
    assert parse_message(_row(reactions=["+1"])).content == "hi"


@pytest.mark.parametrize(
    "row",
    [
        {"id": "m-1"},
        _row(created_at="yesterday"),
        _row(kind="sticker"),
    ],
)
def test_malformed_message_rows_raise(row):
    with pytest.raises(MalformedEvent):
        parse_message(row)


def test_patch_row_keeps_only_changed_fields():
    patch = parse_patch({"id": "m-1", "read_by": ["carol"]})

    assert patch.message_id == "m-1"
    assert patch.content is None
    assert patch.read_by == frozenset({"carol"})


def test_edit_without_edited_at_is_malformed():
    with pytest.raises(MalformedEvent):
        parse_patch({"id": "m-1", "content": "unordered"})

    stamped = parse_patch({"id": "m-1", "content": "ok", "edited_at": "2024-05-01T12:00:05Z"})
    assert stamped.is_edit
    assert stamped.edited_at.tzinfo is not None


def test_reply_and_avatar_survive_the_row_format():
    message = make_message(client_msg_id="c-2")
    message = replace(message, replied_to="msg-0", sender_avatar_url="https://img.example/b.png")

    assert parse_message(message_to_row(message)) == message


def test_patch_and_delete_require_id():
    with pytest.raises(MalformedEvent):
        parse_patch({"content": "x"})
    with pytest.raises(MalformedEvent):
        parse_deleted({"conversation_id": "conv-1"})


def test_conversation_row():
    conversation = parse_conversation(
        {"id": "c", "kind": "direct", "participant_ids": ["alice", "bob"]}
    )

    assert conversation.kind == ConversationKind.DIRECT
    assert conversation.participant_ids == frozenset({"alice", "bob"})
    assert conversation.display_name == "Unnamed Chat"


def test_message_to_row_is_parseable():
    message = make_message(client_msg_id="c-1")

    assert parse_message(message_to_row(message)) == message
