from __future__ import annotations

from chat_sync.application.ports.auth import SessionVerifier
from chat_sync.config import Settings
from chat_sync.infrastructure.auth.hs256_verifier import HS256Verifier
from chat_sync.infrastructure.auth.jwks_verifier import JWKSVerifier


def build_verifier(settings: Settings) -> SessionVerifier:
    if settings.JWT_VERIFY_MODE == "jwks":
        if not settings.JWKS_URL:
            raise ValueError("JWKS_URL is required when JWT_VERIFY_MODE=jwks")
        return JWKSVerifier(settings.JWKS_URL)
    if not settings.JWT_SECRET:
        raise ValueError("JWT_SECRET is required when JWT_VERIFY_MODE=hs256")
    return HS256Verifier(settings.JWT_SECRET, settings.JWT_ALGORITHM)
