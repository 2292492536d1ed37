"""One-time script: create the conversations, participants and messages tables."""
from __future__ import annotations

import asyncio
import logging

from chat_sync.config import settings
from chat_sync.infrastructure.db.base import Base
from chat_sync.infrastructure.db.models import ConversationModel, MessageModel, ParticipantModel  # noqa: F401
from chat_sync.infrastructure.db.session import create_engine

logger = logging.getLogger(__name__)


async def create_schema() -> None:
    engine = create_engine(settings)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Created tables: %s", ", ".join(sorted(Base.metadata.tables)))
    finally:
        await engine.dispose()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(create_schema())


if __name__ == "__main__":
    main()
