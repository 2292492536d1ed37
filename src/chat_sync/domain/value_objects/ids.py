from __future__ import annotations

from typing import NamedTuple, NewType

ConversationId = NewType("ConversationId", str)
MessageId = NewType("MessageId", str)
UserId = NewType("UserId", str)

TEMP_ID_PREFIX = "temp-"


class TypingKey(NamedTuple):
    """Composite key of a per-conversation typing lease."""

    conversation_id: str
    user_id: str


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)
