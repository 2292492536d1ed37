"""Scripted participant that answers in demo conversations.

The peer is an ordinary ``ChatClient``: it shows up in presence, types before
it answers and replies through the same write path as any user.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from chat_sync.application.dto.changes import parse_message
from chat_sync.application.dto.session import Session
from chat_sync.application.exceptions import MalformedEvent
from chat_sync.application.ports.store import Unsubscribe
from chat_sync.domain.entities.message import Message
from chat_sync.domain.value_objects.enums import MessageKind
from chat_sync.services.client import ChatClient
from chat_sync.services.subscription import MESSAGES_TABLE

logger = logging.getLogger(__name__)

FALLBACK_REPLIES = (
    "That's interesting! Tell me more.",
    "I see what you mean.",
    "Thanks for sharing that!",
    "How did that work out?",
    "I have a similar experience.",
    "That sounds great!",
    "I agree with that.",
    "What do you think about it?",
    "That's a good point.",
    "I'll keep that in mind.",
)

# first match wins
_CONTEXTUAL_REPLIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("how are you",), "I'm doing well, thanks for asking! How about you?"),
    (("good morning",), "Good morning! Hope you're having a great day!"),
    (("hello", "hi "), "Hello! Great to hear from you!"),
    (("thank",), "You're very welcome! Happy to help."),
    (
        ("project", "work"),
        "That sounds like an exciting project! What's the most challenging part?",
    ),
    (("weather",), "It's been pretty nice lately! Perfect weather for coding."),
    (("?",), "That's a great question! Let me think about that..."),
)


def compose_reply(content: str, rng: random.Random | None = None) -> str:
    lowered = f"{content.lower()} "
    for needles, reply in _CONTEXTUAL_REPLIES:
        if any(needle in lowered for needle in needles):
            return reply
    return (rng or random).choice(FALLBACK_REPLIES)


async def _ignore(_row: dict[str, Any]) -> None:
    return None


class DemoPeer:
    def __init__(
        self,
        client: ChatClient,
        session: Session,
        store: Any,
        *,
        min_delay: float = 2.0,
        max_delay: float = 5.0,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._session = session
        self._store = store
        self._min_delay = min_delay
        self._max_delay = max(min_delay, max_delay)
        self._rng = rng or random.Random()
        self._unsubscribe: Unsubscribe | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def user_id(self) -> str:
        return self._session.user_id

    async def start(self) -> None:
        await self._client.start(self._session)
        self._unsubscribe = self._store.subscribe_changes(
            MESSAGES_TABLE, None, self._on_message, _ignore, _ignore,
        )
        logger.info("Demo peer %s is online", self.user_id)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        tasks, self._tasks = self._tasks, set()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._client.stop()

    async def _on_message(self, row: dict[str, Any]) -> None:
        try:
            message = parse_message(row)
        except MalformedEvent as exc:
            logger.warning("Demo peer ignoring malformed message: %s", exc.detail)
            return
        if message.sender_id == self.user_id or message.kind != MessageKind.TEXT:
            return
        task = asyncio.create_task(self._answer(message), name=f"demo-reply-{message.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _answer(self, message: Message) -> None:
        await self._client.keystroke(message.conversation_id)
        await asyncio.sleep(self._rng.uniform(self._min_delay, self._max_delay))
        result = await self._client.send(
            message.conversation_id,
            compose_reply(message.content, self._rng),
            replied_to=message.id,
        )
        if not result.success and result.error is not None:
            logger.warning("Demo peer reply failed: %s", result.error.detail)
