"""Payloads exchanged over the realtime transport."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

EVENT_TYPING = "typing"
EVENT_MESSAGE_READ = "message-read"
EVENT_ONLINE_USERS = "online-users"


class TypingSignal(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    user_id: str
    display_name: str | None = None
    is_typing: bool = True


class PresenceMeta(BaseModel):
    """One tracked entry of the transport's presence state."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    display_name: str | None = None
    online_at: datetime | None = None
    # refreshed on every heartbeat; leases run from here, not from delivery time
    heartbeat_at: datetime | None = None
    conversation_id: str | None = None
    is_typing: bool = False


class ReadReceipt(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str
    user_id: str
    message_ids: list[str]
