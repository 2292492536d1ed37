"""In-process store with a change feed, for demo mode and tests."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any

from chat_sync.application.dto.changes import message_to_row
from chat_sync.application.exceptions import AuthorizationDenied, NotFoundError, ValidationError
from chat_sync.application.ports.clock import Clock, SystemClock
from chat_sync.application.ports.store import ChangeCallback, Unsubscribe
from chat_sync.domain.entities.conversation import Conversation
from chat_sync.domain.entities.message import FileRef, Message
from chat_sync.domain.value_objects.enums import ConversationKind, MessageKind, MessageStatus

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass(eq=False)
class _FeedSubscription:
    user_id: str
    table: str
    filter: dict[str, str] | None
    on_insert: ChangeCallback
    on_update: ChangeCallback
    on_delete: ChangeCallback
    active: bool = True

    def callback(self, change: str) -> ChangeCallback:
        return {INSERT: self.on_insert, UPDATE: self.on_update, DELETE: self.on_delete}[change]


def _conversation_row(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "kind": conversation.kind.value,
        "display_name": conversation.display_name,
        "participant_ids": sorted(conversation.participant_ids),
        "last_message_preview": conversation.last_message_preview,
        "last_message_at": conversation.last_message_at,
        "created_at": conversation.created_at,
    }


class InMemoryHub:
    """Shared backing state: the authoritative rows plus the change feed.

    ``hold()`` queues change events instead of delivering them so tests can
    interleave deliveries with other operations; ``flush()`` releases them.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self.messages: dict[str, Message] = {}
        self.conversations: dict[str, Conversation] = {}
        self._subscriptions: list[_FeedSubscription] = []
        self._held: list[tuple[str, str, dict[str, Any]]] | None = None
        self._last_ts = None

    def store_for(
        self, user_id: str, display_name: str = "", avatar_url: str | None = None,
    ) -> InMemoryStore:
        return InMemoryStore(self, user_id, display_name or user_id, avatar_url)

    def hold(self) -> None:
        if self._held is None:
            self._held = []

    async def flush(self) -> None:
        held, self._held = self._held or [], None
        for table, change, row in held:
            await self._deliver(table, change, row)

    def drop_held(self) -> int:
        """Forget queued events, as a feed does for a client that was offline."""
        held, self._held = self._held or [], None
        return len(held)

    def next_timestamp(self):
        now = self.clock.now()
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

    def add_conversation(
        self,
        participant_ids: set[str] | frozenset[str],
        *,
        kind: ConversationKind = ConversationKind.GROUP,
        display_name: str = "Demo chat",
        conversation_id: str | None = None,
    ) -> Conversation:
        conversation = Conversation(
            id=conversation_id or str(uuid.uuid4()),
            kind=kind,
            display_name=display_name,
            participant_ids=frozenset(participant_ids),
            created_at=self.next_timestamp(),
        )
        self.conversations[conversation.id] = conversation
        return conversation

    def subscribe(self, subscription: _FeedSubscription) -> Unsubscribe:
        self._subscriptions.append(subscription)

        def _unsubscribe() -> None:
            subscription.active = False
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return _unsubscribe

    async def publish(self, table: str, change: str, row: dict[str, Any]) -> None:
        if self._held is not None:
            self._held.append((table, change, row))
            return
        await self._deliver(table, change, row)

    async def _deliver(self, table: str, change: str, row: dict[str, Any]) -> None:
        for sub in list(self._subscriptions):
            if not sub.active or sub.table != table:
                continue
            if sub.filter and any(str(row.get(k)) != v for k, v in sub.filter.items()):
                continue
            if not self._visible(sub.user_id, table, row):
                continue
            try:
                await sub.callback(change)(dict(row))
            except Exception:
                logger.exception("Change subscriber failed on %s %s", table, change)

    def _visible(self, user_id: str, table: str, row: dict[str, Any]) -> bool:
        if table == "conversations":
            return user_id in row.get("participant_ids", ())
        conversation = self.conversations.get(str(row.get("conversation_id")))
        return conversation is not None and user_id in conversation.participant_ids


class InMemoryStore:
    """One user's authorization-scoped view of an ``InMemoryHub``."""

    def __init__(
        self,
        hub: InMemoryHub,
        user_id: str,
        display_name: str,
        avatar_url: str | None = None,
    ) -> None:
        self._hub = hub
        self.user_id = user_id
        self.display_name = display_name
        self.avatar_url = avatar_url

    async def fetch_snapshot(self, conversation_id: str, limit: int) -> list[Message]:
        self._require_member(conversation_id)
        rows = [m for m in self._hub.messages.values() if m.conversation_id == conversation_id]
        rows.sort(key=lambda m: m.order_key, reverse=True)
        return rows[:limit]

    async def insert_message(
        self,
        conversation_id: str,
        content: str,
        kind: MessageKind,
        file: FileRef | None = None,
        *,
        client_msg_id: str | None = None,
        replied_to: str | None = None,
    ) -> Message:
        self._require_member(conversation_id)
        if client_msg_id:
            for existing in self._hub.messages.values():
                if (
                    existing.conversation_id == conversation_id
                    and existing.sender_id == self.user_id
                    and existing.client_msg_id == client_msg_id
                ):
                    return existing

        if replied_to is not None:
            original = self._hub.messages.get(replied_to)
            if original is None or original.conversation_id != conversation_id:
                raise ValidationError("Replied-to message is not in this conversation")

        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=self.user_id,
            sender_display_name=self.display_name,
            content=content,
            kind=kind,
            created_at=self._hub.next_timestamp(),
            status=MessageStatus.CONFIRMED,
            file=file,
            read_by=frozenset({self.user_id}),
            client_msg_id=client_msg_id,
            sender_avatar_url=self.avatar_url,
            replied_to=replied_to,
        )
        self._hub.messages[message.id] = message
        conversation = self._hub.conversations[conversation_id]
        self._hub.conversations[conversation_id] = replace(
            conversation,
            last_message_preview=content,
            last_message_at=message.created_at,
        )
        await self._hub.publish("messages", INSERT, message_to_row(message))
        return message

    async def update_message(self, message_id: str, patch: dict[str, Any]) -> None:
        message = self._require_owned(message_id)
        content = patch.get("content", message.content)
        if not isinstance(content, str) or not content:
            raise ValidationError("content must be a non-empty string")
        updated = replace(
            message,
            content=content,
            edited_at=patch.get("edited_at") or self._hub.next_timestamp(),
        )
        self._hub.messages[message_id] = updated
        await self._hub.publish(
            "messages",
            UPDATE,
            {
                "id": updated.id,
                "conversation_id": updated.conversation_id,
                "content": updated.content,
                "edited_at": updated.edited_at,
            },
        )

    async def delete_message(self, message_id: str) -> None:
        message = self._require_owned(message_id)
        del self._hub.messages[message_id]
        for mid, reply in list(self._hub.messages.items()):
            if reply.replied_to == message_id:
                self._hub.messages[mid] = replace(reply, replied_to=None)
        await self._hub.publish(
            "messages", DELETE, {"id": message.id, "conversation_id": message.conversation_id},
        )

    def subscribe_changes(
        self,
        table: str,
        filter: dict[str, str] | None,
        on_insert: ChangeCallback,
        on_update: ChangeCallback,
        on_delete: ChangeCallback,
    ) -> Unsubscribe:
        return self._hub.subscribe(
            _FeedSubscription(self.user_id, table, filter, on_insert, on_update, on_delete)
        )

    async def list_conversations(self, user_id: str) -> list[Conversation]:
        return [c for c in self._hub.conversations.values() if user_id in c.participant_ids]

    async def create_conversation(
        self,
        kind: ConversationKind,
        display_name: str,
        participant_ids: frozenset[str],
    ) -> Conversation:
        conversation = self._hub.add_conversation(
            participant_ids | {self.user_id}, kind=kind, display_name=display_name,
        )
        await self._hub.publish("conversations", INSERT, _conversation_row(conversation))
        return conversation

    def _require_member(self, conversation_id: str) -> Conversation:
        conversation = self._hub.conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        if self.user_id not in conversation.participant_ids:
            raise AuthorizationDenied("Not a participant of this conversation")
        return conversation

    def _require_owned(self, message_id: str) -> Message:
        message = self._hub.messages.get(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.sender_id != self.user_id:
            raise AuthorizationDenied("Only the sender can change a message")
        return message
