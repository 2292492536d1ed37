from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Session:
    """Authenticated user as handed over by the auth provider."""

    user_id: str
    display_name: str
    token: str = ""
    avatar_url: str | None = None

    @property
    def presence_key(self) -> str:
        """Key under which this session is tracked on the presence channel."""
        return f"user:{self.user_id}"
