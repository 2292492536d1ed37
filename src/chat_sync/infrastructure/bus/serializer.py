from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID


class _Encoder(json.JSONEncoder):
    def default(self, o: object) -> Any:
        if isinstance(o, UUID):
            return str(o)
        if isinstance(o, datetime):
            return o.isoformat()
        if isinstance(o, (set, frozenset)):
            return sorted(o)
        return super().default(o)


def change_event(table: str, change: str) -> str:
    return f"{table}.{change}"


def split_change_event(event_type: str) -> tuple[str, str]:
    table, _, change = event_type.rpartition(".")
    if not table or not change:
        raise ValueError(f"not a change event: {event_type!r}")
    return table, change


def serialize_event(
    event_type: str,
    payload: dict[str, Any],
    *,
    audience: list[str] | None = None,
    origin: str | None = None,
) -> str:
    """Envelope: ``event``, ``data`` and optionally who may see it / who sent it."""
    envelope: dict[str, Any] = {"event": event_type, "data": payload}
    if audience is not None:
        envelope["audience"] = audience
    if origin is not None:
        envelope["origin"] = origin
    return json.dumps(envelope, cls=_Encoder)


def deserialize_event(raw: str | bytes) -> tuple[str, dict[str, Any], dict[str, Any]]:
    """Returns ``(event_type, data, envelope)``."""
    envelope = json.loads(raw)
    return envelope["event"], envelope["data"], envelope
