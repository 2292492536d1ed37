from __future__ import annotations

from typing import Any

from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import AuthorizationDenied


def session_from_claims(token: str, payload: dict[str, Any]) -> Session:
    """``sub`` is the user id; the display name falls back through common claims."""
    subject = payload.get("sub")
    if not subject:
        raise AuthorizationDenied("Token has no subject")
    metadata = payload.get("user_metadata") or {}
    display_name = (
        payload.get("name")
        or metadata.get("full_name")
        or payload.get("email")
        or "Anonymous"
    )
    avatar_url = metadata.get("avatar_url") or payload.get("picture")
    return Session(
        user_id=str(subject),
        display_name=str(display_name),
        token=token,
        avatar_url=str(avatar_url) if avatar_url else None,
    )
