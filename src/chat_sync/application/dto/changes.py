"""Validation models for rows delivered by the store's change feed."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from chat_sync.application.exceptions import MalformedEvent
from chat_sync.domain.entities.conversation import Conversation
from chat_sync.domain.entities.message import FileRef, Message
from chat_sync.domain.events.message_changes import MessagePatch
from chat_sync.domain.value_objects.enums import ConversationKind, MessageKind, MessageStatus


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


class MessageRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    sender_id: str
    sender_display_name: str = "Unknown User"
    sender_avatar_url: str | None = None
    content: str
    kind: MessageKind = MessageKind.TEXT
    created_at: datetime
    edited_at: datetime | None = None
    file_url: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    read_by: list[str] = Field(default_factory=list)
    client_msg_id: str | None = None
    replied_to: str | None = None

    def to_entity(self) -> Message:
        file = None
        if self.file_url:
            file = FileRef(url=self.file_url, name=self.file_name, size=self.file_size)
        return Message(
            id=self.id,
            conversation_id=self.conversation_id,
            sender_id=self.sender_id,
            sender_display_name=self.sender_display_name,
            content=self.content,
            kind=self.kind,
            created_at=_aware(self.created_at),
            status=MessageStatus.CONFIRMED,
            edited_at=_aware(self.edited_at) if self.edited_at else None,
            file=file,
            read_by=frozenset(self.read_by) | {self.sender_id},
            client_msg_id=self.client_msg_id,
            sender_avatar_url=self.sender_avatar_url,
            replied_to=self.replied_to,
        )


class MessagePatchRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str | None = None
    content: str | None = None
    edited_at: datetime | None = None
    read_by: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _edit_is_stamped(self) -> MessagePatchRow:
        # edits are ordered by edited_at, an unstamped one cannot be merged
        if self.content is not None and self.edited_at is None:
            raise ValueError("content change without edited_at")
        return self

    def to_patch(self) -> MessagePatch:
        return MessagePatch(
            message_id=self.id,
            conversation_id=self.conversation_id,
            content=self.content,
            edited_at=_aware(self.edited_at) if self.edited_at else None,
            read_by=frozenset(self.read_by),
        )


class DeletedRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str | None = None


class ConversationRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    kind: ConversationKind = ConversationKind.GROUP
    display_name: str = "Unnamed Chat"
    participant_ids: list[str] = Field(default_factory=list)
    last_message_preview: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime | None = None

    def to_entity(self) -> Conversation:
        return Conversation(
            id=self.id,
            kind=self.kind,
            display_name=self.display_name,
            participant_ids=frozenset(self.participant_ids),
            last_message_preview=self.last_message_preview,
            last_message_at=_aware(self.last_message_at) if self.last_message_at else None,
            created_at=_aware(self.created_at) if self.created_at else None,
        )


def parse_message(row: dict[str, Any]) -> Message:
    try:
        return MessageRow.model_validate(row).to_entity()
    except ValidationError as exc:
        raise MalformedEvent(f"invalid message row: {exc.error_count()} error(s)") from exc


def parse_patch(row: dict[str, Any]) -> MessagePatch:
    try:
        return MessagePatchRow.model_validate(row).to_patch()
    except ValidationError as exc:
        raise MalformedEvent(f"invalid update row: {exc.error_count()} error(s)") from exc


def parse_deleted(row: dict[str, Any]) -> DeletedRow:
    try:
        return DeletedRow.model_validate(row)
    except ValidationError as exc:
        raise MalformedEvent(f"invalid delete row: {exc.error_count()} error(s)") from exc


def parse_conversation(row: dict[str, Any]) -> Conversation:
    try:
        return ConversationRow.model_validate(row).to_entity()
    except ValidationError as exc:
        raise MalformedEvent(f"invalid conversation row: {exc.error_count()} error(s)") from exc


def message_to_row(message: Message) -> dict[str, Any]:
    """Inverse of ``parse_message``; used by adapters that emit change rows."""
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "sender_display_name": message.sender_display_name,
        "content": message.content,
        "kind": message.kind.value,
        "created_at": message.created_at,
        "edited_at": message.edited_at,
        "file_url": message.file.url if message.file else None,
        "file_name": message.file.name if message.file else None,
        "file_size": message.file.size if message.file else None,
        "read_by": sorted(message.read_by),
        "client_msg_id": message.client_msg_id,
        "sender_avatar_url": message.sender_avatar_url,
        "replied_to": message.replied_to,
    }
