from __future__ import annotations

from chat_sync.domain.entities.message import FileRef, Message
from chat_sync.domain.value_objects.enums import MessageKind, MessageStatus
from chat_sync.infrastructure.db.models.message import MessageModel


def model_to_entity(model: MessageModel) -> Message:
    file = None
    if model.file_url:
        file = FileRef(url=model.file_url, name=model.file_name, size=model.file_size)
    return Message(
        id=str(model.id),
        conversation_id=str(model.conversation_id),
        sender_id=model.sender_id,
        sender_display_name=model.sender_display_name,
        content=model.content,
        kind=MessageKind(model.kind),
        created_at=model.created_at,
        status=MessageStatus.CONFIRMED,
        edited_at=model.edited_at,
        file=file,
        read_by=frozenset(model.read_by or ()) | {model.sender_id},
        client_msg_id=model.client_msg_id,
        sender_avatar_url=model.sender_avatar_url,
        replied_to=str(model.replied_to) if model.replied_to else None,
    )
