from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chat_sync.domain.entities.conversation import Conversation
from chat_sync.domain.value_objects.enums import ConversationKind
from chat_sync.infrastructure.db.mappers import conversation as mapper
from chat_sync.infrastructure.db.models.conversation import ConversationModel
from chat_sync.infrastructure.db.models.participant import ParticipantModel


class ConversationReaderRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, conversation_id: UUID) -> Conversation | None:
        result = await self._session.get(ConversationModel, conversation_id)
        return mapper.model_to_entity(result) if result else None

    async def list_for_user(self, user_id: str) -> list[Conversation]:
        stmt = (
            select(ConversationModel)
            .join(
                ParticipantModel,
                ParticipantModel.conversation_id == ConversationModel.id,
            )
            .where(ParticipantModel.user_id == user_id)
            .order_by(ConversationModel.last_message_at.desc().nullslast(), ConversationModel.id)
        )
        result = await self._session.execute(stmt)
        return [mapper.model_to_entity(m) for m in result.scalars().all()]

    async def participant_ids(self, conversation_id: UUID) -> list[str]:
        stmt = select(ParticipantModel.user_id).where(
            ParticipantModel.conversation_id == conversation_id,
        )
        result = await self._session.execute(stmt)
        return sorted(result.scalars().all())


class ConversationWriterRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        kind: ConversationKind,
        display_name: str,
        participant_ids: frozenset[str],
    ) -> Conversation:
        model = ConversationModel(kind=kind.value, display_name=display_name)
        self._session.add(model)
        await self._session.flush()
        for user_id in sorted(participant_ids):
            self._session.add(ParticipantModel(conversation_id=model.id, user_id=user_id))
        await self._session.flush()
        await self._session.refresh(model, attribute_names=["created_at"])
        return Conversation(
            id=str(model.id),
            kind=kind,
            display_name=display_name,
            participant_ids=frozenset(participant_ids),
            created_at=model.created_at,
        )

    async def touch_last_message(
        self,
        conversation_id: UUID,
        preview: str,
        at: datetime,
    ) -> None:
        stmt = (
            update(ConversationModel)
            .where(ConversationModel.id == conversation_id)
            .values(last_message_preview=preview, last_message_at=at)
        )
        await self._session.execute(stmt)
