from __future__ import annotations

from enum import StrEnum


class MessageKind(StrEnum):
    TEXT = "text"
    FILE = "file"


class MessageStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ConversationKind(StrEnum):
    DIRECT = "direct"
    GROUP = "group"


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SubscriptionState(StrEnum):
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
