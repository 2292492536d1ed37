from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from chat_sync.domain.value_objects.enums import MessageKind, MessageStatus


@dataclass(frozen=True, slots=True)
class FileRef:
    url: str
    name: str | None = None
    size: int | None = None


@dataclass(frozen=True, slots=True)
class Message:
    id: str
    conversation_id: str
    sender_id: str
    sender_display_name: str
    content: str
    kind: MessageKind
    created_at: datetime
    status: MessageStatus = MessageStatus.CONFIRMED
    edited_at: datetime | None = None
    file: FileRef | None = None
    read_by: frozenset[str] = field(default_factory=frozenset)
    client_msg_id: str | None = None
    sender_avatar_url: str | None = None
    replied_to: str | None = None

    @property
    def order_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    @property
    def is_local(self) -> bool:
        """True while the entry has not been acknowledged by the store."""
        return self.status != MessageStatus.CONFIRMED
