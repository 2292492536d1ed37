"""Outbound writes: optimistic send, explicit retry, edit, delete, read receipts."""
from __future__ import annotations

import logging
import uuid
from dataclasses import replace

from chat_sync.application.dto.results import OperationResult, SendResult
from chat_sync.application.dto.session import Session
from chat_sync.application.dto.signals import EVENT_MESSAGE_READ
from chat_sync.application.exceptions import (
    AppError,
    AuthorizationDenied,
    NotFoundError,
    ValidationError,
    WriteFailed,
)
from chat_sync.application.ports.clock import Clock, SystemClock
from chat_sync.application.ports.store import MessageStore
from chat_sync.domain.entities.message import FileRef, Message
from chat_sync.domain.events.message_changes import MessagePatch
from chat_sync.domain.value_objects.enums import MessageKind, MessageStatus
from chat_sync.domain.value_objects.ids import TEMP_ID_PREFIX, ConversationId, MessageId
from chat_sync.services.connection import ConnectionManager
from chat_sync.services.presence import TypingNotifier
from chat_sync.services.reconciliation import MessageReconciler
from chat_sync.services.subscription import ConversationSubscriptions

logger = logging.getLogger(__name__)

# errors the caller must not retry
_TERMINAL_ERRORS = (AuthorizationDenied, NotFoundError, ValidationError)


def _as_write_error(exc: Exception) -> AppError:
    if isinstance(exc, _TERMINAL_ERRORS):
        return exc
    return WriteFailed(str(exc) or exc.__class__.__name__)


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


class OutboundPipeline:
    """Turns user intents into durable writes.

    Sends are applied optimistically and confirmed through the reconciler; a
    failed send stays in the list as ``failed`` until ``retry`` is called.
    Nothing is retried automatically.
    """

    def __init__(
        self,
        store: MessageStore,
        session: Session,
        subscriptions: ConversationSubscriptions,
        *,
        connection: ConnectionManager | None = None,
        typing: TypingNotifier | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._session = session
        self._subscriptions = subscriptions
        self._connection = connection
        self._typing = typing
        self._clock = clock or SystemClock()

    async def send(
        self,
        conversation_id: str,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        file: FileRef | None = None,
        replied_to: str | None = None,
    ) -> SendResult:
        content = content.strip()
        if not content and file is None:
            return SendResult(success=False, error=ValidationError("Message is empty"))
        if kind == MessageKind.FILE and file is None:
            return SendResult(success=False, error=ValidationError("File message without file"))

        if self._typing is not None:
            await self._typing.stop(conversation_id)

        pending = Message(
            id=new_temp_id(),
            conversation_id=conversation_id,
            sender_id=self._session.user_id,
            sender_display_name=self._session.display_name,
            content=content,
            kind=kind,
            created_at=self._clock.now(),
            status=MessageStatus.PENDING,
            file=file,
            read_by=frozenset({self._session.user_id}),
            client_msg_id=str(uuid.uuid4()),
            sender_avatar_url=self._session.avatar_url,
            replied_to=replied_to,
        )
        reconciler = self._reconciler(conversation_id)
        if reconciler is not None:
            reconciler.apply_optimistic(pending)
        return await self._write(reconciler, pending)

    async def retry(self, message_id: str) -> SendResult:
        reconciler, entry = self._find(message_id)
        if reconciler is None or entry is None:
            return SendResult(success=False, error=NotFoundError(f"Message {message_id} not found"))
        if entry.status != MessageStatus.FAILED:
            return SendResult(
                success=False,
                message=entry,
                error=ValidationError(f"Message {message_id} is {entry.status}, not failed"),
            )
        reconciler.mark_pending(entry.id)
        logger.info("Retrying message %s in conversation %s", entry.id, entry.conversation_id)
        return await self._write(reconciler, reconciler.get(entry.id) or entry)

    async def edit(self, message_id: str, content: str) -> OperationResult:
        content = content.strip()
        if not content:
            return OperationResult.fail(ValidationError("Message is empty"))
        reconciler, entry = self._find(message_id)
        if entry is not None and entry.is_local:
            return OperationResult.fail(ValidationError("Message is not delivered yet"))
        target_id = entry.id if entry is not None else message_id

        edited_at = self._clock.now()
        try:
            await self._store.update_message(
                MessageId(target_id), {"content": content, "edited_at": edited_at},
            )
        except Exception as exc:
            logger.warning("Edit of message %s failed: %s", target_id, exc)
            return OperationResult.fail(_as_write_error(exc))

        if reconciler is not None:
            reconciler.apply_live_update(
                MessagePatch(
                    message_id=target_id,
                    conversation_id=reconciler.conversation_id,
                    content=content,
                    edited_at=edited_at,
                )
            )
        return OperationResult.ok()

    async def delete(self, message_id: str) -> OperationResult:
        reconciler, entry = self._find(message_id)
        if reconciler is not None and entry is not None and entry.is_local:
            # a pending insert may still land, so only a failed one can go
            if entry.status != MessageStatus.FAILED:
                return OperationResult.fail(ValidationError("Message is not delivered yet"))
            reconciler.discard(entry.id)
            return OperationResult.ok()
        target_id = entry.id if entry is not None else message_id

        try:
            await self._store.delete_message(MessageId(target_id))
        except Exception as exc:
            logger.warning("Delete of message %s failed: %s", target_id, exc)
            return OperationResult.fail(_as_write_error(exc))

        if reconciler is not None:
            reconciler.apply_live_delete(target_id)
        return OperationResult.ok()

    async def mark_read(self, conversation_id: str, message_ids: list[str]) -> OperationResult:
        reconciler = self._reconciler(conversation_id)
        if reconciler is None:
            return OperationResult.fail(NotFoundError(f"Conversation {conversation_id} is not open"))
        unread = [
            m.id
            for m in (reconciler.get(mid) for mid in message_ids)
            if m is not None and not m.is_local and self._session.user_id not in m.read_by
        ]
        if not unread:
            return OperationResult.ok()
        reconciler.apply_read(unread, self._session.user_id)
        if self._connection is not None:
            await self._connection.emit(
                EVENT_MESSAGE_READ,
                {
                    "conversation_id": conversation_id,
                    "user_id": self._session.user_id,
                    "message_ids": unread,
                },
            )
        return OperationResult.ok()

    # -- internals ---------------------------------------------------------

    async def _write(self, reconciler: MessageReconciler | None, pending: Message) -> SendResult:
        try:
            stored = await self._store.insert_message(
                ConversationId(pending.conversation_id),
                pending.content,
                pending.kind,
                pending.file,
                client_msg_id=pending.client_msg_id,
                replied_to=MessageId(pending.replied_to) if pending.replied_to else None,
            )
        except Exception as exc:
            logger.warning(
                "Send to conversation %s failed: %s", pending.conversation_id, exc,
            )
            failed = replace(pending, status=MessageStatus.FAILED)
            if reconciler is not None:
                reconciler.mark_failed(pending.id)
                failed = reconciler.get(pending.id) or failed
            return SendResult(success=False, message=failed, error=_as_write_error(exc))

        if reconciler is None:
            return SendResult(success=True, message=stored)
        reconciler.apply_confirmed(stored, temp_id=pending.id)
        return SendResult(success=True, message=reconciler.get(stored.id) or stored)

    def _reconciler(self, conversation_id: str) -> MessageReconciler | None:
        handle = self._subscriptions.get(conversation_id)
        if handle is None or not handle.active:
            return None
        return handle.reconciler

    def _find(self, message_id: str) -> tuple[MessageReconciler | None, Message | None]:
        for handle in self._subscriptions.handles():
            entry = handle.reconciler.get(message_id)
            if entry is not None:
                return handle.reconciler, entry
        return None, None
