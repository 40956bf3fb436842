"""In-process lifecycle notifications.

These are synchronous, best-effort signals for logging and monitoring
listeners. They never reach Kafka and are never retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING, Callable, FrozenSet, List, Optional

from .model import CdcPosition, TableIdentifier

if TYPE_CHECKING:  # pragma: no cover
    from .cdc.engine import StopReason
    from .configuration import ConfigurationAggregate

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CaptureStarted:
    table: TableIdentifier
    position: Optional[CdcPosition]
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class CaptureStopped:
    table: TableIdentifier
    final_position: Optional[CdcPosition]
    reason: "StopReason"
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ConfigurationLoaded:
    configuration: "ConfigurationAggregate"
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ConfigurationChanged:
    previous: "ConfigurationAggregate"
    current: "ConfigurationAggregate"
    added_tables: FrozenSet[TableIdentifier]
    removed_tables: FrozenSet[TableIdentifier]
    occurred_at: datetime = field(default_factory=_now)


Listener = Callable[[object], None]


class NotificationBus:
    """Fans notifications out to listeners, isolating listener failures."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def publish(self, notification: object) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(notification)
            except Exception:  # noqa: BLE001 - listeners are isolated
                logger.exception(
                    "notification listener failed for %s",
                    type(notification).__name__,
                )


__all__ = [
    "CaptureStarted",
    "CaptureStopped",
    "ConfigurationChanged",
    "ConfigurationLoaded",
    "NotificationBus",
]
