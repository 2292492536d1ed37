from __future__ import annotations

from typing import Any, Callable, Coroutine, Protocol

from chat_sync.application.dto.session import Session

EventCallback = Callable[[Any], Coroutine[Any, Any, None]]
SyncCallback = Callable[[dict[str, list[dict[str, Any]]]], Coroutine[Any, Any, None]]

# lifecycle events fired by transports
EVENT_CONNECT = "connect"
EVENT_DISCONNECT = "disconnect"
EVENT_CONNECT_ERROR = "connect_error"

# disconnect reasons
SERVER_DISCONNECT = "server disconnect"
CLIENT_DISCONNECT = "client disconnect"
TRANSPORT_ERROR = "transport error"


class Transport(Protocol):
    """Realtime channel carrying presence and signaling events."""

    async def connect(self, session: Session) -> None:
        """Open the connection. Raises on failure."""
        ...

    async def close(self) -> None: ...

    def on(self, event: str, callback: EventCallback) -> None: ...

    def off(self, event: str, callback: EventCallback) -> None: ...

    async def emit(self, event: str, payload: dict[str, Any]) -> None: ...

    async def track(self, payload: dict[str, Any]) -> None: ...

    async def untrack(self) -> None: ...

    def on_sync(self, callback: SyncCallback) -> None: ...

    def off_sync(self, callback: SyncCallback) -> None: ...
