from __future__ import annotations

import jwt

from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import AuthorizationDenied
from chat_sync.infrastructure.auth.claims import session_from_claims


class HS256Verifier:
    """Verify JWTs signed with a shared HS256 secret."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self._algorithm = algorithm

    async def verify(self, token: str) -> Session:
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            raise AuthorizationDenied(f"Invalid token: {exc}") from exc
        return session_from_claims(token, payload)
