"""Conversation list with last-message previews and unread counters."""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from chat_sync.application.dto.changes import parse_conversation, parse_deleted, parse_message
from chat_sync.application.dto.results import OperationResult
from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import MalformedEvent, SnapshotLoadFailed, ValidationError
from chat_sync.application.ports.store import ConversationStore, MessageStore, Unsubscribe
from chat_sync.domain.entities.conversation import Conversation
from chat_sync.domain.entities.message import Message
from chat_sync.domain.value_objects.enums import ConversationKind, MessageKind
from chat_sync.domain.value_objects.ids import UserId

logger = logging.getLogger(__name__)

CONVERSATIONS_TABLE = "conversations"
MESSAGES_TABLE = "messages"

_PREVIEW_LENGTH = 80
_SEEN_LIMIT = 1000
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


async def _ignore(_row: dict[str, Any]) -> None:
    return None


def _preview(message: Message) -> str:
    if message.kind == MessageKind.FILE and message.file is not None:
        return message.file.name or "File"
    text = " ".join(message.content.split())
    if len(text) > _PREVIEW_LENGTH:
        return text[: _PREVIEW_LENGTH - 1] + "…"
    return text


class ConversationDirectory:
    """The viewing user's conversations.

    ``unread_count`` grows for messages from other participants unless the
    conversation is focused when they arrive; focusing or ``mark_read``
    resets it.
    """

    def __init__(self, store: Any, session: Session) -> None:
        self._conversations: ConversationStore = store
        self._messages: MessageStore = store
        self._session = session
        self._by_id: dict[str, Conversation] = {}
        self._focused: str | None = None
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._unsubscribe: list[Unsubscribe] = []

    @property
    def focused(self) -> str | None:
        return self._focused

    def start(self) -> None:
        if self._unsubscribe:
            return
        self._unsubscribe.append(
            self._messages.subscribe_changes(
                MESSAGES_TABLE, None, self._on_message, _ignore, _ignore,
            )
        )
        self._unsubscribe.append(
            self._messages.subscribe_changes(
                CONVERSATIONS_TABLE,
                None,
                self._on_conversation_upsert,
                self._on_conversation_upsert,
                self._on_conversation_delete,
            )
        )

    def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe.clear()

    async def load(self) -> OperationResult:
        try:
            rows = await self._conversations.list_conversations(UserId(self._session.user_id))
        except Exception as exc:
            logger.warning("Loading conversations failed: %s", exc)
            return OperationResult.fail(SnapshotLoadFailed(str(exc) or exc.__class__.__name__))
        loaded = {}
        for conversation in rows:
            known = self._by_id.get(conversation.id)
            if known is not None:
                conversation = replace(conversation, unread_count=known.unread_count)
            loaded[conversation.id] = conversation
        self._by_id = loaded
        return OperationResult.ok()

    async def create(
        self,
        kind: ConversationKind,
        display_name: str,
        participant_ids: frozenset[str] | set[str],
    ) -> Conversation:
        participants = frozenset(UserId(p) for p in participant_ids)
        participants |= {UserId(self._session.user_id)}
        if kind == ConversationKind.DIRECT and len(participants) != 2:
            raise ValidationError("A direct conversation has exactly two participants")
        conversation = await self._conversations.create_conversation(
            kind, display_name.strip() or "Unnamed Chat", participants,
        )
        self._by_id.setdefault(conversation.id, conversation)
        return self._by_id[conversation.id]

    def list(self) -> list[Conversation]:
        return sorted(
            self._by_id.values(),
            key=lambda c: (c.last_message_at or c.created_at or _EPOCH, c.id),
            reverse=True,
        )

    def get(self, conversation_id: str) -> Conversation | None:
        return self._by_id.get(conversation_id)

    def set_focus(self, conversation_id: str | None) -> None:
        self._focused = conversation_id
        if conversation_id is not None:
            self.mark_read(conversation_id)

    def mark_read(self, conversation_id: str) -> None:
        conversation = self._by_id.get(conversation_id)
        if conversation is not None and conversation.unread_count:
            self._by_id[conversation_id] = replace(conversation, unread_count=0)

    def apply_message(self, message: Message) -> bool:
        if message.id in self._seen:
            return False
        conversation = self._by_id.get(message.conversation_id)
        if conversation is None:
            return False
        self._seen[message.id] = None
        while len(self._seen) > _SEEN_LIMIT:
            self._seen.popitem(last=False)

        if conversation.last_message_at is None or message.created_at >= conversation.last_message_at:
            conversation = replace(
                conversation,
                last_message_preview=_preview(message),
                last_message_at=message.created_at,
            )
        if message.sender_id == self._session.user_id or self._focused == conversation.id:
            conversation = replace(conversation, unread_count=0)
        else:
            conversation = replace(conversation, unread_count=conversation.unread_count + 1)
        self._by_id[conversation.id] = conversation
        return True

    async def _on_message(self, row: dict[str, Any]) -> None:
        try:
            message = parse_message(row)
        except MalformedEvent as exc:
            logger.warning("Dropping malformed message row: %s", exc.detail)
            return
        self.apply_message(message)

    async def _on_conversation_upsert(self, row: dict[str, Any]) -> None:
        try:
            incoming = parse_conversation(row)
        except MalformedEvent as exc:
            logger.warning("Dropping malformed conversation row: %s", exc.detail)
            return
        if incoming.participant_ids and self._session.user_id not in incoming.participant_ids:
            self._by_id.pop(incoming.id, None)
            return
        known = self._by_id.get(incoming.id)
        if known is None:
            self._by_id[incoming.id] = incoming
            return
        self._by_id[incoming.id] = replace(
            known,
            kind=incoming.kind,
            display_name=incoming.display_name,
            participant_ids=incoming.participant_ids or known.participant_ids,
        )

    async def _on_conversation_delete(self, row: dict[str, Any]) -> None:
        try:
            deleted = parse_deleted(row)
        except MalformedEvent as exc:
            logger.warning("Dropping malformed conversation delete: %s", exc.detail)
            return
        self._by_id.pop(deleted.id, None)
        if self._focused == deleted.id:
            self._focused = None
