from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from chat_sync.domain.entities.message import FileRef, Message
from chat_sync.domain.value_objects.enums import MessageKind
from chat_sync.infrastructure.db.mappers import message as mapper
from chat_sync.infrastructure.db.models.message import MessageModel


class MessageReaderRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, message_id: UUID) -> Message | None:
        model = await self._session.get(MessageModel, message_id)
        return mapper.model_to_entity(model) if model else None

    async def list_recent(self, conversation_id: UUID, *, limit: int = 50) -> list[Message]:
        """Newest first."""
        stmt = (
            select(MessageModel)
            .where(MessageModel.conversation_id == conversation_id)
            .order_by(MessageModel.created_at.desc(), MessageModel.id.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [mapper.model_to_entity(m) for m in result.scalars().all()]


class MessageWriterRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_if_not_exists(
        self,
        conversation_id: UUID,
        sender_id: str,
        sender_display_name: str,
        content: str,
        kind: MessageKind,
        file: FileRef | None,
        client_msg_id: str | None,
        *,
        sender_avatar_url: str | None = None,
        replied_to: UUID | None = None,
    ) -> tuple[Message, bool]:
        """Insert message idempotently. Returns (message, created_flag)."""
        values = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "sender_display_name": sender_display_name,
            "sender_avatar_url": sender_avatar_url,
            "content": content,
            "kind": kind.value,
            "file_url": file.url if file else None,
            "file_name": file.name if file else None,
            "file_size": file.size if file else None,
            "read_by": [sender_id],
            "client_msg_id": client_msg_id,
            "replied_to": replied_to,
        }
        stmt = (
            pg_insert(MessageModel)
            .values(**values)
            .on_conflict_do_nothing(constraint="uq_message_idempotency")
            .returning(MessageModel)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()

        if row is not None:
            return mapper.model_to_entity(row), True

        # conflict, fetch the existing row
        assert client_msg_id is not None
        existing = await self.get_by_client_msg_id(conversation_id, sender_id, client_msg_id)
        assert existing is not None
        return existing, False

    async def get_by_client_msg_id(
        self,
        conversation_id: UUID,
        sender_id: str,
        client_msg_id: str,
    ) -> Message | None:
        stmt = select(MessageModel).where(
            MessageModel.conversation_id == conversation_id,
            MessageModel.sender_id == sender_id,
            MessageModel.client_msg_id == client_msg_id,
        )
        result = await self._session.execute(stmt)
        model = result.scalar_one_or_none()
        return mapper.model_to_entity(model) if model else None

    async def update_content(self, message_id: UUID, content: str, edited_at: datetime) -> None:
        stmt = (
            update(MessageModel)
            .where(MessageModel.id == message_id)
            .values(content=content, edited_at=edited_at)
        )
        await self._session.execute(stmt)

    async def delete(self, message_id: UUID) -> None:
        await self._session.execute(delete(MessageModel).where(MessageModel.id == message_id))
