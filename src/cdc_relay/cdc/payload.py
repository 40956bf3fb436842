"""Wire representation of change events published to Kafka."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Dict

from ..model import ChangeEvent


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def event_to_payload(event: ChangeEvent) -> Dict[str, object]:
    """Return the JSON-serialisable message body for ``event``.

    ``before`` and ``after`` are omitted when absent rather than sent as null.
    """
    payload: Dict[str, object] = {
        "table": {
            "database": event.table.database,
            "schema": event.table.schema,
            "table": event.table.table,
        },
        "operation": event.operation.value,
        "timestamp": _format_timestamp(event.timestamp),
        "position": event.position.to_dict(),
    }
    if event.before is not None:
        payload["before"] = event.before.to_dict()
    if event.after is not None:
        payload["after"] = event.after.to_dict()
    payload["metadata"] = dict(event.metadata)
    return payload


def encode_event(event: ChangeEvent) -> bytes:
    return json.dumps(
        event_to_payload(event),
        ensure_ascii=False,
        separators=(",", ":"),
        default=str,
    ).encode("utf-8")


__all__ = ["encode_event", "event_to_payload"]
