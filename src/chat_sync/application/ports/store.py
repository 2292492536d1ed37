from __future__ import annotations

from typing import Any, Callable, Coroutine, Protocol

from chat_sync.domain.entities.conversation import Conversation
from chat_sync.domain.entities.message import FileRef, Message
from chat_sync.domain.value_objects.enums import ConversationKind, MessageKind
from chat_sync.domain.value_objects.ids import ConversationId, MessageId, UserId

ChangeCallback = Callable[[dict[str, Any]], Coroutine[Any, Any, None]]
Unsubscribe = Callable[[], None]


class MessageStore(Protocol):
    async def fetch_snapshot(self, conversation_id: ConversationId, limit: int) -> list[Message]:
        """Most recent ``limit`` messages, most-recent-first."""
        ...

    async def insert_message(
        self,
        conversation_id: ConversationId,
        content: str,
        kind: MessageKind,
        file: FileRef | None = None,
        *,
        client_msg_id: str | None = None,
        replied_to: MessageId | None = None,
    ) -> Message:
        """Persist a message for the session user.

        Idempotent on ``client_msg_id``: a repeated insert returns the stored row.
        ``replied_to`` must name a message of the same conversation.
        """
        ...

    async def update_message(self, message_id: MessageId, patch: dict[str, Any]) -> None:
        """Raises AuthorizationDenied if the session user does not own the message."""
        ...

    async def delete_message(self, message_id: MessageId) -> None: ...

    def subscribe_changes(
        self,
        table: str,
        filter: dict[str, str] | None,
        on_insert: ChangeCallback,
        on_update: ChangeCallback,
        on_delete: ChangeCallback,
    ) -> Unsubscribe: ...


class ConversationStore(Protocol):
    async def list_conversations(self, user_id: UserId) -> list[Conversation]: ...

    async def create_conversation(
        self,
        kind: ConversationKind,
        display_name: str,
        participant_ids: frozenset[UserId],
    ) -> Conversation: ...
