from __future__ import annotations

from typing import Literal

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    POSTGRES_USER: str = "chat"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "chat"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_RECYCLE: int = 300

    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CHANGES_CHANNEL: str = "chat.changes"
    REDIS_PRESENCE_CHANNEL: str = "chat.presence"
    REDIS_SIGNAL_CHANNEL: str = "chat.signals"

    JWT_SECRET: str = ""
    JWT_VERIFY_MODE: Literal["hs256", "jwks"] = "hs256"
    JWT_ALGORITHM: str = "HS256"
    JWKS_URL: str | None = None

    RECONNECT_BASE_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 30.0
    RECONNECT_MAX_ATTEMPTS: int = 5

    TYPING_LEASE_SECONDS: float = 3.0
    ONLINE_LEASE_SECONDS: float = 30.0
    TYPING_DEBOUNCE_SECONDS: float = 1.0
    TYPING_IDLE_SECONDS: float = 2.0

    MATCH_TOLERANCE_SECONDS: float = 10.0
    SNAPSHOT_LIMIT: int = 50
    MAX_BUFFERED_CHANGES: int = 500

    DEMO_MODE: bool = False
    DEMO_REPLY_MIN_DELAY: float = 2.0
    DEMO_REPLY_MAX_DELAY: float = 5.0

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.POSTGRES_DB}"
        )

    model_config = ConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()  # type: ignore[call-arg]
