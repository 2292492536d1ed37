"""Per-conversation message list reconciliation.

Merges the initial snapshot, change-feed events and optimistic local writes
into one ordered, deduplicated list. Every ``apply_*`` operation is an upsert or
removal keyed by message id, so replaying an event leaves the list unchanged.

Entries that are not yet confirmed carry a temporary id. A confirmed message
resolves against them by correlation id (``client_msg_id``) first and, failing
that, by sender + kind + content within a time tolerance.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Iterable

from chat_sync.domain.entities.message import Message
from chat_sync.domain.events.message_changes import MessagePatch
from chat_sync.domain.value_objects.enums import MessageStatus

logger = logging.getLogger(__name__)

ChangeListener = Callable[[list[Message]], None]

DEFAULT_MATCH_TOLERANCE = timedelta(seconds=10)
DEFAULT_MAX_BUFFERED = 500


def _edit_stamp(message: Message) -> datetime:
    return message.edited_at or message.created_at


def _merge_confirmed(existing: Message, incoming: Message) -> Message:
    """Upsert of a known id: newest edit wins, read receipts accumulate."""
    merged = incoming
    if _edit_stamp(existing) > _edit_stamp(incoming):
        merged = replace(incoming, content=existing.content, edited_at=existing.edited_at)
    return replace(
        merged,
        read_by=existing.read_by | incoming.read_by,
        client_msg_id=incoming.client_msg_id or existing.client_msg_id,
        file=incoming.file or existing.file,
    )


def _apply_patch(message: Message, patch: MessagePatch) -> Message:
    updated = message
    # an edit without edited_at cannot be ordered against others, so it is ignored
    if patch.is_edit and patch.edited_at is not None:
        stale = message.edited_at is not None and patch.edited_at < message.edited_at
        if not stale:
            updated = replace(updated, content=patch.content, edited_at=patch.edited_at)
    if patch.read_by:
        updated = replace(updated, read_by=updated.read_by | patch.read_by)
    return updated


class MessageReconciler:
    """Single writer of one conversation's message list."""

    def __init__(
        self,
        conversation_id: str,
        local_user_id: str,
        *,
        match_tolerance: timedelta = DEFAULT_MATCH_TOLERANCE,
        max_buffered: int = DEFAULT_MAX_BUFFERED,
    ) -> None:
        self.conversation_id = conversation_id
        self.local_user_id = local_user_id
        self._match_tolerance = match_tolerance
        self._max_buffered = max_buffered

        self._by_id: dict[str, Message] = {}
        self._ordered: list[Message] | None = []
        self._deleted: set[str] = set()
        self._resolved: dict[str, str] = {}  # temp id -> server id
        self._buffered: OrderedDict[str, list[MessagePatch]] = OrderedDict()
        self._buffered_count = 0
        self._listeners: list[ChangeListener] = []

    # -- read side ---------------------------------------------------------

    def current(self) -> list[Message]:
        if self._ordered is None:
            self._ordered = sorted(self._by_id.values(), key=lambda m: m.order_key)
        return list(self._ordered)

    def get(self, message_id: str) -> Message | None:
        resolved = self._resolved.get(message_id, message_id)
        return self._by_id.get(resolved)

    def resolve_id(self, message_id: str) -> str:
        """Server id a temporary id was confirmed as, or the id itself."""
        return self._resolved.get(message_id, message_id)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    @property
    def buffered_count(self) -> int:
        return self._buffered_count

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # -- local writes ------------------------------------------------------

    def apply_optimistic(self, message: Message) -> bool:
        if message.id in self._deleted or message.id in self._resolved:
            return False
        if message.client_msg_id and any(
            m.client_msg_id == message.client_msg_id and m.id != message.id
            for m in self._by_id.values()
        ):
            return False
        if message.status == MessageStatus.CONFIRMED:
            message = replace(message, status=MessageStatus.PENDING)
        if self._by_id.get(message.id) == message:
            return False
        self._store(message)
        self._notify()
        return True

    def apply_confirmed(self, message: Message, temp_id: str | None = None) -> bool:
        """Fold the store's acknowledgement of a local write into the list.

        ``temp_id`` names the optimistic entry the write was issued for; the
        live echo of the same row may already have resolved it.
        """
        changed = False
        if temp_id is not None and temp_id in self._by_id and temp_id != message.id:
            local = self._by_id[temp_id]
            if message.id in self._by_id or message.id in self._deleted:
                # echo got there first without resolving the local entry
                self._drop(temp_id)
                self._resolved[temp_id] = message.id
                changed = True
            else:
                self._confirm_local(local, message)
                self._notify()
                return True
        changed = self._upsert_confirmed(message) or changed
        if changed:
            self._notify()
        return changed

    def mark_failed(self, message_id: str) -> bool:
        entry = self._by_id.get(message_id)
        if entry is None or entry.status != MessageStatus.PENDING:
            return False
        self._store(replace(entry, status=MessageStatus.FAILED))
        self._notify()
        return True

    def mark_pending(self, message_id: str) -> bool:
        entry = self._by_id.get(message_id)
        if entry is None or entry.status != MessageStatus.FAILED:
            return False
        self._store(replace(entry, status=MessageStatus.PENDING))
        self._notify()
        return True

    def discard(self, message_id: str) -> bool:
        """Drop a local entry that never reached the store."""
        entry = self._by_id.get(message_id)
        if entry is None or not entry.is_local:
            return False
        self._drop(message_id)
        self._notify()
        return True

    # -- store / feed ------------------------------------------------------

    def apply_snapshot(self, messages: Iterable[Message]) -> bool:
        changed = False
        for message in messages:
            if message.conversation_id != self.conversation_id:
                logger.warning(
                    "Snapshot row %s belongs to conversation %s, expected %s",
                    message.id, message.conversation_id, self.conversation_id,
                )
                continue
            changed = self._upsert_confirmed(message) or changed
        if changed:
            self._notify()
        return changed

    def apply_live_insert(self, message: Message) -> bool:
        changed = self._upsert_confirmed(message)
        if changed:
            self._notify()
        return changed

    def apply_live_update(self, patch: MessagePatch) -> bool:
        message_id = patch.message_id
        if message_id in self._deleted:
            return False
        existing = self._by_id.get(message_id)
        if existing is None:
            self._buffer(patch)
            return False
        updated = _apply_patch(existing, patch)
        if updated == existing:
            return False
        self._store(updated)
        self._notify()
        return True

    def apply_live_delete(self, message_id: str) -> bool:
        self._deleted.add(message_id)
        patches = self._buffered.pop(message_id, None)
        if patches:
            self._buffered_count -= len(patches)
        if message_id not in self._by_id:
            return False
        self._drop(message_id)
        self._notify()
        return True

    def apply_read(self, message_ids: Iterable[str], user_id: str) -> bool:
        changed = False
        for message_id in message_ids:
            entry = self.get(message_id)
            if entry is None or entry.is_local:
                continue
            patch = MessagePatch(message_id=entry.id, read_by=frozenset({user_id}))
            updated = _apply_patch(entry, patch)
            if updated != entry:
                self._store(updated)
                changed = True
        if changed:
            self._notify()
        return changed

    # -- internals ---------------------------------------------------------

    def _upsert_confirmed(self, message: Message) -> bool:
        if message.id in self._deleted:
            return False
        if message.status != MessageStatus.CONFIRMED:
            message = replace(message, status=MessageStatus.CONFIRMED)

        existing = self._by_id.get(message.id)
        if existing is not None:
            merged = _merge_confirmed(existing, message)
            if merged == existing:
                return False
            self._store(merged)
            return True

        local = self._resolve_local(message)
        if local is not None:
            self._confirm_local(local, message)
            return True

        if message.sender_id == self.local_user_id:
            logger.debug(
                "Own message %s has no local counterpart, sent from another session",
                message.id,
            )
        self._store(message)
        self._replay_buffered(message.id)
        return True

    def _resolve_local(self, message: Message) -> Message | None:
        local = [m for m in self._by_id.values() if m.is_local]
        if not local:
            return None
        if message.client_msg_id:
            for entry in local:
                if entry.client_msg_id == message.client_msg_id:
                    return entry

        best: Message | None = None
        for entry in local:
            if entry.status != MessageStatus.PENDING:
                continue
            if entry.client_msg_id and message.client_msg_id:
                continue
            if (entry.sender_id, entry.kind, entry.content) != (
                message.sender_id, message.kind, message.content,
            ):
                continue
            if abs(entry.created_at - message.created_at) > self._match_tolerance:
                continue
            if best is None or entry.order_key < best.order_key:
                best = entry
        return best

    def _confirm_local(self, local: Message, confirmed: Message) -> None:
        self._drop(local.id)
        self._resolved[local.id] = confirmed.id
        self._store(
            replace(
                confirmed,
                status=MessageStatus.CONFIRMED,
                read_by=confirmed.read_by | local.read_by,
                client_msg_id=confirmed.client_msg_id or local.client_msg_id,
            )
        )
        self._replay_buffered(confirmed.id)
        logger.debug("Local message %s confirmed as %s", local.id, confirmed.id)

    def _buffer(self, patch: MessagePatch) -> None:
        pending = self._buffered.setdefault(patch.message_id, [])
        if patch in pending:
            return
        pending.append(patch)
        self._buffered_count += 1
        while self._buffered_count > self._max_buffered:
            oldest_id, oldest = next(iter(self._buffered.items()))
            dropped = oldest.pop(0)
            self._buffered_count -= 1
            if not oldest:
                del self._buffered[oldest_id]
            logger.warning(
                "Change buffer full, dropped update for unknown message %s",
                dropped.message_id,
            )

    def _replay_buffered(self, message_id: str) -> None:
        patches = self._buffered.pop(message_id, None)
        if not patches:
            return
        self._buffered_count -= len(patches)
        entry = self._by_id[message_id]
        for patch in patches:
            entry = _apply_patch(entry, patch)
        self._store(entry)
        logger.debug("Replayed %d buffered update(s) on %s", len(patches), message_id)

    def _store(self, message: Message) -> None:
        self._by_id[message.id] = message
        self._ordered = None

    def _drop(self, message_id: str) -> None:
        del self._by_id[message_id]
        self._ordered = None

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.current()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Message list listener failed")
