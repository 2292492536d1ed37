from __future__ import annotations

from typing import Protocol

from chat_sync.application.dto.session import Session


class SessionVerifier(Protocol):
    async def verify(self, token: str) -> Session: ...
