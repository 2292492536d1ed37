from __future__ import annotations

from chat_sync.domain.entities.conversation import Conversation
from chat_sync.domain.value_objects.enums import ConversationKind
from chat_sync.infrastructure.db.models.conversation import ConversationModel


def model_to_entity(model: ConversationModel) -> Conversation:
    return Conversation(
        id=str(model.id),
        kind=ConversationKind(model.kind),
        display_name=model.display_name,
        participant_ids=frozenset(p.user_id for p in model.participants),
        last_message_preview=model.last_message_preview,
        last_message_at=model.last_message_at,
        created_at=model.created_at,
    )
