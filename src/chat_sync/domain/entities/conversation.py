from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from chat_sync.domain.value_objects.enums import ConversationKind


@dataclass(frozen=True, slots=True)
class Conversation:
    id: str
    kind: ConversationKind
    display_name: str
    participant_ids: frozenset[str] = field(default_factory=frozenset)
    last_message_preview: str | None = None
    last_message_at: datetime | None = None
    unread_count: int = 0
    created_at: datetime | None = None
