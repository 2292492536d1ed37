from __future__ import annotations

import asyncio
import logging

import jwt
from jwt import PyJWKClient

from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import AuthorizationDenied
from chat_sync.infrastructure.auth.claims import session_from_claims

logger = logging.getLogger(__name__)


class JWKSVerifier:
    """Verify JWTs using a remote JWKS endpoint."""

    def __init__(self, jwks_url: str) -> None:
        self._jwks_url = jwks_url
        self._jwk_client = PyJWKClient(jwks_url)

    async def verify(self, token: str) -> Session:
        try:
            # PyJWKClient fetches over blocking HTTP
            signing_key = await asyncio.to_thread(self._jwk_client.get_signing_key_from_jwt, token)
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256", "ES256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            logger.warning("Token rejected by JWKS %s: %s", self._jwks_url, exc)
            raise AuthorizationDenied(f"Invalid token: {exc}") from exc
        return session_from_claims(token, payload)
