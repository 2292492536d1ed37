from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True, slots=True)
class MessagePatch:
    """Partial update of a confirmed message as delivered by the change feed."""

    message_id: str
    conversation_id: str | None = None
    content: str | None = None
    edited_at: datetime | None = None
    read_by: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_edit(self) -> bool:
        return self.content is not None
