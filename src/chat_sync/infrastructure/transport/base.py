from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any

from chat_sync.application.ports.transport import EventCallback, SyncCallback

logger = logging.getLogger(__name__)


class CallbackRegistry:
    """Event and presence-sync handler bookkeeping shared by transports.

    A failing handler is logged; the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventCallback]] = defaultdict(list)
        self._sync_handlers: list[SyncCallback] = []

    def on(self, event: str, callback: EventCallback) -> None:
        self._handlers[event].append(callback)

    def off(self, event: str, callback: EventCallback) -> None:
        if callback in self._handlers[event]:
            self._handlers[event].remove(callback)

    def on_sync(self, callback: SyncCallback) -> None:
        self._sync_handlers.append(callback)

    def off_sync(self, callback: SyncCallback) -> None:
        if callback in self._sync_handlers:
            self._sync_handlers.remove(callback)

    async def fire(self, event: str, payload: Any) -> None:
        for callback in list(self._handlers[event]):
            try:
                await callback(payload)
            except Exception:
                logger.exception("Handler for %s failed", event)

    async def fire_sync(self, state: dict[str, list[dict[str, Any]]]) -> None:
        for callback in list(self._sync_handlers):
            try:
                await callback(state)
            except Exception:
                logger.exception("Presence sync handler failed")
