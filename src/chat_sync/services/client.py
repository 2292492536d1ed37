"""Per-session wiring of the sync components."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from chat_sync.application.dto.results import OperationResult, SendResult
from chat_sync.application.dto.session import Session
from chat_sync.application.ports.clock import Clock, SystemClock
from chat_sync.application.ports.transport import Transport
from chat_sync.config import Settings
from chat_sync.domain.entities.message import FileRef
from chat_sync.domain.value_objects.enums import MessageKind
from chat_sync.services.connection import ConnectionManager
from chat_sync.services.conversations import ConversationDirectory
from chat_sync.services.outbound import OutboundPipeline
from chat_sync.services.presence import PresenceTracker, TypingNotifier
from chat_sync.services.subscription import ConversationSubscriptions, SubscriptionHandle

logger = logging.getLogger(__name__)


class ChatSession:
    """Everything that lives exactly as long as one signed-in session."""

    def __init__(
        self,
        session: Session,
        connection: ConnectionManager,
        store: Any,
        settings: Settings,
        clock: Clock,
    ) -> None:
        self.session = session
        self.connection = connection
        self.presence = PresenceTracker(
            connection,
            session,
            clock=clock,
            typing_lease=timedelta(seconds=settings.TYPING_LEASE_SECONDS),
            online_lease=timedelta(seconds=settings.ONLINE_LEASE_SECONDS),
        )
        self.typing = TypingNotifier(
            connection,
            session,
            clock=clock,
            debounce=settings.TYPING_DEBOUNCE_SECONDS,
            idle=settings.TYPING_IDLE_SECONDS,
        )
        self.subscriptions = ConversationSubscriptions(
            store,
            session,
            connection=connection,
            snapshot_limit=settings.SNAPSHOT_LIMIT,
            match_tolerance=timedelta(seconds=settings.MATCH_TOLERANCE_SECONDS),
            max_buffered=settings.MAX_BUFFERED_CHANGES,
        )
        self.outbound = OutboundPipeline(
            store,
            session,
            self.subscriptions,
            connection=connection,
            typing=self.typing,
            clock=clock,
        )
        self.directory = ConversationDirectory(store, session)


class ChatClient:
    """Entry point for a UI layer.

    Owns one connection manager; ``start``/``stop`` follow the auth state.
    """

    def __init__(
        self,
        transport: Transport,
        store: Any,
        settings: Settings,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock or SystemClock()
        self.connection = ConnectionManager(
            transport,
            base_delay=settings.RECONNECT_BASE_DELAY,
            max_delay=settings.RECONNECT_MAX_DELAY,
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
        )
        self._current: ChatSession | None = None

    @property
    def current(self) -> ChatSession | None:
        return self._current

    def _require(self) -> ChatSession:
        if self._current is None:
            raise RuntimeError("ChatClient is not started")
        return self._current

    async def on_auth_change(self, session: Session | None) -> None:
        if session is None:
            await self.stop()
        elif self._current is None or self._current.session != session:
            await self.start(session)

    async def start(self, session: Session) -> ChatSession:
        if self._current is not None:
            if self._current.session == session:
                return self._current
            await self.stop()

        current = ChatSession(session, self.connection, self._store, self._settings, self._clock)
        self._current = current
        current.presence.start()
        current.directory.start()
        await self.connection.connect(session)
        result = await current.directory.load()
        if not result.success:
            logger.warning("Conversation list unavailable: %s", result.error)
        logger.info("Chat session started for user %s", session.user_id)
        return current

    async def stop(self) -> None:
        current = self._current
        if current is None:
            return
        self._current = None
        await current.typing.stop_all()
        current.subscriptions.close_all()
        current.directory.stop()
        await current.presence.stop()
        await self.connection.disconnect()
        logger.info("Chat session stopped for user %s", current.session.user_id)

    async def resync(self) -> None:
        """Catch up after the change feed was interrupted."""
        current = self._current
        if current is None:
            return
        await current.subscriptions.resubscribe_all()
        result = await current.directory.load()
        if not result.success:
            logger.warning("Conversation list unavailable after resync: %s", result.error)

    # -- conversation view -------------------------------------------------

    async def open_conversation(self, conversation_id: str) -> SubscriptionHandle:
        current = self._require()
        handle = await current.subscriptions.open(conversation_id)
        current.directory.set_focus(conversation_id)
        return handle

    async def close_conversation(self, handle: SubscriptionHandle) -> None:
        current = self._require()
        await current.typing.stop(handle.conversation_id)
        current.subscriptions.close(handle)
        if current.directory.focused == handle.conversation_id:
            current.directory.set_focus(None)

    async def send(
        self,
        conversation_id: str,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        file: FileRef | None = None,
        replied_to: str | None = None,
    ) -> SendResult:
        return await self._require().outbound.send(
            conversation_id, content, kind, file, replied_to=replied_to,
        )

    async def retry(self, message_id: str) -> SendResult:
        return await self._require().outbound.retry(message_id)

    async def edit(self, message_id: str, content: str) -> OperationResult:
        return await self._require().outbound.edit(message_id, content)

    async def delete(self, message_id: str) -> OperationResult:
        return await self._require().outbound.delete(message_id)

    async def mark_read(self, conversation_id: str, message_ids: list[str]) -> OperationResult:
        current = self._require()
        current.directory.mark_read(conversation_id)
        return await current.outbound.mark_read(conversation_id, message_ids)

    async def keystroke(self, conversation_id: str) -> None:
        await self._require().typing.keystroke(conversation_id)
