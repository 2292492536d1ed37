"""PostgreSQL-backed store; committed changes are announced on the change feed."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_sync.application.dto.changes import message_to_row
from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import AuthorizationDenied, NotFoundError, ValidationError
from chat_sync.application.ports.store import ChangeCallback, Unsubscribe
from chat_sync.domain.entities.conversation import Conversation
from chat_sync.domain.entities.message import FileRef, Message
from chat_sync.domain.value_objects.enums import ConversationKind, MessageKind
from chat_sync.infrastructure.bus.change_feed import DELETE, INSERT, UPDATE, RedisChangeFeed
from chat_sync.infrastructure.db.repositories.conversation import (
    ConversationReaderRepo,
    ConversationWriterRepo,
)
from chat_sync.infrastructure.db.repositories.message import MessageReaderRepo, MessageWriterRepo

logger = logging.getLogger(__name__)

MESSAGES = "messages"
CONVERSATIONS = "conversations"


def _uuid(raw: str, what: str) -> UUID:
    try:
        return UUID(raw)
    except (TypeError, ValueError):
        raise NotFoundError(f"{what} not found") from None


class SqlAlchemyStore:
    """MessageStore + ConversationStore scoped to one signed-in user."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: RedisChangeFeed,
        session: Session,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed
        self._user = session

    async def fetch_snapshot(self, conversation_id: str, limit: int) -> list[Message]:
        cid = _uuid(conversation_id, "Conversation")
        async with self._session_factory() as db:
            await self._require_member(db, cid)
            return await MessageReaderRepo(db).list_recent(cid, limit=limit)

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
        cid = _uuid(conversation_id, "Conversation")
        reply_to = _uuid(replied_to, "Replied-to message") if replied_to else None
        async with self._session_factory() as db:
            audience = await self._require_member(db, cid)
            if reply_to is not None:
                original = await MessageReaderRepo(db).get_by_id(reply_to)
                if original is None or original.conversation_id != str(cid):
                    raise ValidationError("Replied-to message is not in this conversation")
            message, created = await MessageWriterRepo(db).create_if_not_exists(
                cid,
                self._user.user_id,
                self._user.display_name,
                content,
                kind,
                file,
                client_msg_id,
                sender_avatar_url=self._user.avatar_url,
                replied_to=reply_to,
            )
            if created:
                await ConversationWriterRepo(db).touch_last_message(
                    cid, content, message.created_at,
                )
            await db.commit()

        if created:
            await self._feed.publish(MESSAGES, INSERT, message_to_row(message), audience)
        else:
            logger.info("Duplicate send %s in conversation %s", client_msg_id, conversation_id)
        return message

    async def update_message(self, message_id: str, patch: dict[str, Any]) -> None:
        content = patch.get("content")
        if not isinstance(content, str) or not content:
            raise ValidationError("content must be a non-empty string")
        edited_at = patch.get("edited_at") or datetime.now(timezone.utc)
        mid = _uuid(message_id, "Message")
        async with self._session_factory() as db:
            message = await self._require_owned(db, mid)
            cid = UUID(message.conversation_id)
            audience = await ConversationReaderRepo(db).participant_ids(cid)
            await MessageWriterRepo(db).update_content(mid, content, edited_at)
            await db.commit()

        await self._feed.publish(
            MESSAGES,
            UPDATE,
            {
                "id": message_id,
                "conversation_id": message.conversation_id,
                "content": content,
                "edited_at": edited_at,
            },
            audience,
        )

    async def delete_message(self, message_id: str) -> None:
        mid = _uuid(message_id, "Message")
        async with self._session_factory() as db:
            message = await self._require_owned(db, mid)
            audience = await ConversationReaderRepo(db).participant_ids(
                UUID(message.conversation_id),
            )
            await MessageWriterRepo(db).delete(mid)
            await db.commit()

        await self._feed.publish(
            MESSAGES,
            DELETE,
            {"id": message_id, "conversation_id": message.conversation_id},
            audience,
        )

    def subscribe_changes(
        self,
        table: str,
        filter: dict[str, str] | None,
        on_insert: ChangeCallback,
        on_update: ChangeCallback,
        on_delete: ChangeCallback,
    ) -> Unsubscribe:
        return self._feed.subscribe(table, filter, on_insert, on_update, on_delete)

    async def list_conversations(self, user_id: str) -> list[Conversation]:
        async with self._session_factory() as db:
            return await ConversationReaderRepo(db).list_for_user(user_id)

    async def create_conversation(
        self,
        kind: ConversationKind,
        display_name: str,
        participant_ids: frozenset[str],
    ) -> Conversation:
        participants = frozenset(participant_ids) | {self._user.user_id}
        async with self._session_factory() as db:
            conversation = await ConversationWriterRepo(db).create(kind, display_name, participants)
            await db.commit()

        await self._feed.publish(
            CONVERSATIONS,
            INSERT,
            {
                "id": conversation.id,
                "kind": conversation.kind.value,
                "display_name": conversation.display_name,
                "participant_ids": sorted(participants),
                "created_at": conversation.created_at,
            },
            sorted(participants),
        )
        return conversation

    async def _require_member(self, db: AsyncSession, conversation_id: UUID) -> list[str]:
        participants = await ConversationReaderRepo(db).participant_ids(conversation_id)
        if not participants:
            raise NotFoundError("Conversation not found")
        if self._user.user_id not in participants:
            raise AuthorizationDenied("Not a participant of this conversation")
        return participants

    async def _require_owned(self, db: AsyncSession, message_id: UUID) -> Message:
        message = await MessageReaderRepo(db).get_by_id(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message.sender_id != self._user.user_id:
            raise AuthorizationDenied("Only the sender can change a message")
        return message
