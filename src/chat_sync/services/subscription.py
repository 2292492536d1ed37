"""Per-conversation subscription lifecycle: live filter + snapshot load."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Coroutine

from pydantic import ValidationError

from chat_sync.application.dto.changes import parse_deleted, parse_message, parse_patch
from chat_sync.application.dto.results import OperationResult
from chat_sync.application.dto.session import Session
from chat_sync.application.dto.signals import EVENT_MESSAGE_READ, ReadReceipt
from chat_sync.application.exceptions import MalformedEvent, SnapshotLoadFailed
from chat_sync.application.ports.store import MessageStore, Unsubscribe
from chat_sync.domain.entities.message import Message
from chat_sync.domain.value_objects.enums import ConnectionState, SubscriptionState
from chat_sync.domain.value_objects.ids import ConversationId
from chat_sync.services.connection import ConnectionManager
from chat_sync.services.reconciliation import MessageReconciler

logger = logging.getLogger(__name__)

MESSAGES_TABLE = "messages"


@dataclass(eq=False)
class SubscriptionHandle:
    conversation_id: str
    reconciler: MessageReconciler
    active: bool = True
    state: SubscriptionState = SubscriptionState.LOADING
    error: SnapshotLoadFailed | None = None
    detach_live: Unsubscribe | None = field(default=None, repr=False)

    def messages(self) -> list[Message]:
        return self.reconciler.current()


class ConversationSubscriptions:
    """Opens and closes conversation subscriptions for one session.

    The live filter is attached before the snapshot is fetched; the reconciler
    absorbs whatever the two deliver twice.
    """

    def __init__(
        self,
        store: MessageStore,
        session: Session,
        *,
        connection: ConnectionManager | None = None,
        snapshot_limit: int = 50,
        match_tolerance: timedelta = timedelta(seconds=10),
        max_buffered: int = 500,
    ) -> None:
        self._store = store
        self._session = session
        self._connection = connection
        self._snapshot_limit = snapshot_limit
        self._match_tolerance = match_tolerance
        self._max_buffered = max_buffered
        self._handles: dict[str, SubscriptionHandle] = {}
        if connection is not None:
            connection.add_state_listener(self._on_connection_state)
            connection.on(EVENT_MESSAGE_READ, self._on_read_receipt)

    def get(self, conversation_id: str) -> SubscriptionHandle | None:
        return self._handles.get(conversation_id)

    def handles(self) -> list[SubscriptionHandle]:
        return list(self._handles.values())

    async def open(self, conversation_id: str) -> SubscriptionHandle:
        existing = self._handles.get(conversation_id)
        if existing is not None and existing.active:
            return existing

        handle = SubscriptionHandle(
            conversation_id=conversation_id,
            reconciler=MessageReconciler(
                conversation_id,
                self._session.user_id,
                match_tolerance=self._match_tolerance,
                max_buffered=self._max_buffered,
            ),
        )
        self._handles[conversation_id] = handle
        self._attach(handle)
        await self._load_snapshot(handle)
        return handle

    def close(self, handle: SubscriptionHandle) -> None:
        if not handle.active:
            return
        handle.active = False
        self._detach_live(handle)
        if self._handles.get(handle.conversation_id) is handle:
            del self._handles[handle.conversation_id]
        logger.debug("Closed subscription for conversation %s", handle.conversation_id)

    def close_all(self) -> None:
        for handle in list(self._handles.values()):
            self.close(handle)
        if self._connection is not None:
            self._connection.remove_state_listener(self._on_connection_state)
            self._connection.off(EVENT_MESSAGE_READ, self._on_read_receipt)

    async def refresh(self, handle: SubscriptionHandle) -> OperationResult:
        if not handle.active:
            return OperationResult.fail(SnapshotLoadFailed("Subscription is closed"))
        await self._load_snapshot(handle)
        if handle.error is not None:
            return OperationResult.fail(handle.error)
        return OperationResult.ok()

    async def resubscribe_all(self) -> None:
        """Re-attach every open subscription and catch up from a fresh snapshot.

        Change events published while the feed was down are gone for good.
        """
        for handle in list(self._handles.values()):
            if not handle.active:
                continue
            logger.info("Resubscribing conversation %s", handle.conversation_id)
            self._attach(handle)
            await self._load_snapshot(handle)

    # -- internals ---------------------------------------------------------

    def _attach(self, handle: SubscriptionHandle) -> None:
        self._detach_live(handle)
        handle.detach_live = self._store.subscribe_changes(
            MESSAGES_TABLE,
            {"conversation_id": handle.conversation_id},
            self._live_handler(handle, self._on_insert),
            self._live_handler(handle, self._on_update),
            self._live_handler(handle, self._on_delete),
        )

    @staticmethod
    def _detach_live(handle: SubscriptionHandle) -> None:
        if handle.detach_live is not None:
            try:
                handle.detach_live()
            except Exception:
                logger.warning(
                    "Detaching live filter for %s failed", handle.conversation_id, exc_info=True,
                )
            handle.detach_live = None

    async def _load_snapshot(self, handle: SubscriptionHandle) -> None:
        handle.state = SubscriptionState.LOADING
        try:
            rows = await self._store.fetch_snapshot(
                ConversationId(handle.conversation_id), self._snapshot_limit,
            )
        except Exception as exc:
            if not handle.active:
                return
            logger.warning(
                "Snapshot load for conversation %s failed: %s", handle.conversation_id, exc,
            )
            handle.error = SnapshotLoadFailed(str(exc) or exc.__class__.__name__)
            handle.state = SubscriptionState.ERROR
            return

        if not handle.active:
            logger.debug("Discarding snapshot for closed conversation %s", handle.conversation_id)
            return
        handle.reconciler.apply_snapshot(reversed(rows))
        handle.error = None
        handle.state = SubscriptionState.READY
        logger.debug(
            "Loaded %d message(s) for conversation %s", len(rows), handle.conversation_id,
        )

    def _live_handler(
        self,
        handle: SubscriptionHandle,
        apply: Callable[[SubscriptionHandle, dict[str, Any]], Coroutine[Any, Any, None]],
    ) -> Callable[[dict[str, Any]], Coroutine[Any, Any, None]]:
        async def _handler(row: dict[str, Any]) -> None:
            if not handle.active:
                return
            try:
                await apply(handle, row)
            except MalformedEvent as exc:
                logger.warning(
                    "Dropping malformed change for conversation %s: %s",
                    handle.conversation_id, exc.detail,
                )

        return _handler

    async def _on_insert(self, handle: SubscriptionHandle, row: dict[str, Any]) -> None:
        message = parse_message(row)
        if message.conversation_id != handle.conversation_id:
            raise MalformedEvent(f"message {message.id} is for another conversation")
        handle.reconciler.apply_live_insert(message)

    async def _on_update(self, handle: SubscriptionHandle, row: dict[str, Any]) -> None:
        patch = parse_patch(row)
        if patch.conversation_id not in (None, handle.conversation_id):
            raise MalformedEvent(f"update {patch.message_id} is for another conversation")
        handle.reconciler.apply_live_update(patch)

    async def _on_delete(self, handle: SubscriptionHandle, row: dict[str, Any]) -> None:
        deleted = parse_deleted(row)
        if deleted.conversation_id not in (None, handle.conversation_id):
            raise MalformedEvent(f"delete {deleted.id} is for another conversation")
        handle.reconciler.apply_live_delete(deleted.id)

    async def _on_connection_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new == ConnectionState.CONNECTED:
            await self.resubscribe_all()

    async def _on_read_receipt(self, payload: Any) -> None:
        try:
            receipt = ReadReceipt.model_validate(payload)
        except ValidationError:
            logger.warning("Dropping malformed read receipt: %r", payload)
            return
        handle = self._handles.get(receipt.conversation_id)
        if handle is None or not handle.active:
            return
        handle.reconciler.apply_read(receipt.message_ids, receipt.user_id)
