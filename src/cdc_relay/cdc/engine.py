"""Capture engine lifecycle.

The engine owns a single :class:`EngineStatus` record. Every transition runs
under one re-entrant lock and replaces the record wholesale, so readers
calling :meth:`CaptureEngine.status` always see a consistent snapshot.

States move ``STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED``.
``FAILED`` can be entered from any state when the source breaks and is left
only through an explicit :meth:`CaptureEngine.start` or
:meth:`CaptureEngine.restart`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import TYPE_CHECKING, Callable, Dict, Optional, Protocol

from ..model import CdcPosition, ChangeEvent
from ..notifications import CaptureStarted, CaptureStopped
from .checkpoint import OffsetStore
from .source import CaptureSource

if TYPE_CHECKING:  # pragma: no cover
    from ..configuration import ConfigurationAggregate, SourceDatabaseConfig
    from .metrics import PipelineMetrics

logger = logging.getLogger(__name__)

_PARTITION_UNSAFE = re.compile(r"[^a-zA-Z0-9]")


class IllegalStateError(RuntimeError):
    """Raised when a lifecycle operation is not valid in the current state."""


class EngineError(RuntimeError):
    """Raised when the capture source fails to start or stop."""


class EngineState(str, Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    FAILED = "FAILED"


class StopReason(str, Enum):
    GRACEFUL_SHUTDOWN = "GRACEFUL_SHUTDOWN"
    CONFIGURATION_CHANGE = "CONFIGURATION_CHANGE"
    ERROR = "ERROR"
    APPLICATION_SHUTDOWN = "APPLICATION_SHUTDOWN"
    MANUAL_STOP = "MANUAL_STOP"


@dataclass(frozen=True)
class EngineStatus:
    state: EngineState = EngineState.STOPPED
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    events_captured: int = 0
    current_position: Optional[CdcPosition] = None
    error_message: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state is EngineState.RUNNING


@dataclass(frozen=True)
class StopResult:
    success: bool
    shutdown_duration_seconds: float
    events_captured: int
    final_position: Optional[CdcPosition]
    reason: StopReason


class Notifier(Protocol):
    def publish(self, notification: object) -> None: ...


def source_partition_for(database: "SourceDatabaseConfig") -> str:
    """Return the offset partition name used for ``database``."""
    host = _PARTITION_UNSAFE.sub("-", database.host)
    return f"{host}-{database.database}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaptureEngine:
    def __init__(
        self,
        source: CaptureSource,
        offset_store: OffsetStore,
        notifier: Notifier,
        *,
        handler: Optional[Callable[[ChangeEvent], None]] = None,
        drain_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
        metrics: Optional["PipelineMetrics"] = None,
    ) -> None:
        self._source = source
        self._offset_store = offset_store
        self._notifier = notifier
        self._handler = handler
        self._drain_timeout = drain_timeout_seconds
        self._clock = clock
        self._metrics = metrics
        self._lock = RLock()
        self._status = EngineStatus()
        self._configuration: Optional["ConfigurationAggregate"] = None
        self._positions: Dict[str, CdcPosition] = {}
        if metrics is not None:
            metrics.set_engine_state(self._status.state.value)

    @property
    def configuration(self) -> Optional["ConfigurationAggregate"]:
        return self._configuration

    def status(self) -> EngineStatus:
        return self._status

    def is_running(self) -> bool:
        return self._status.is_running

    def _set_status(self, status: EngineStatus) -> None:
        previous = self._status.state
        self._status = status
        if previous is not status.state:
            logger.info("capture engine %s -> %s", previous.value, status.state.value)
            if self._metrics is not None:
                self._metrics.set_engine_state(status.state.value)

    # ------------------------------------------------------------------
    # Start

    def start(self, configuration: "ConfigurationAggregate") -> None:
        with self._lock:
            state = self._status.state
            if state in (EngineState.RUNNING, EngineState.STARTING):
                logger.warning("capture engine already %s; ignoring start", state.value)
                return
            if state is EngineState.STOPPING:
                raise IllegalStateError("cannot start capture engine while it is stopping")
            self._set_status(
                EngineStatus(state=EngineState.STARTING, started_at=self._clock())
            )
            self._configuration = configuration
            self._positions = {}

        try:
            configuration.validate()
            partition = source_partition_for(configuration.database)
            resume = self._load_resume_position(partition)
            with self._lock:
                if resume is not None:
                    self._positions[partition] = resume
                    self._set_status(replace(self._status, current_position=resume))
            self._source.start(self._on_event, resume)
        except Exception as exc:  # noqa: BLE001 - reported as EngineError
            with self._lock:
                self._set_status(
                    replace(
                        self._status,
                        state=EngineState.FAILED,
                        stopped_at=self._clock(),
                        error_message=str(exc),
                    )
                )
            logger.error("failed to start capture engine: %s", exc)
            raise EngineError(f"failed to start capture engine: {exc}") from exc

        with self._lock:
            if self._status.state is not EngineState.STARTING:
                logger.warning(
                    "capture source failed while starting; engine is %s",
                    self._status.state.value,
                )
                return
            self._set_status(replace(self._status, state=EngineState.RUNNING))
        logger.info(
            "capture started for %d table(s) from %s",
            len(configuration.tables),
            "saved position" if resume is not None else "the beginning",
        )
        for table_config in configuration.tables:
            self._notify(CaptureStarted(table=table_config.table, position=resume))

    def _load_resume_position(self, partition: str) -> Optional[CdcPosition]:
        try:
            position = self._offset_store.load(partition)
        except Exception as exc:  # noqa: BLE001 - start fresh instead
            logger.warning(
                "failed to load resume position for partition %s; starting fresh: %s",
                partition,
                exc,
            )
            return None
        if position is not None:
            logger.info("resuming partition %s from %s", partition, dict(position.offset))
        return position

    # ------------------------------------------------------------------
    # Event flow

    def _on_event(self, event: ChangeEvent) -> None:
        if self._handler is not None:
            self._handler(event)
        self.record_event(event)

    def record_event(self, event: ChangeEvent) -> None:
        with self._lock:
            self._positions[event.position.source_partition] = event.position
            self._set_status(
                replace(
                    self._status,
                    events_captured=self._status.events_captured + 1,
                    current_position=event.position,
                )
            )

    def fail(self, error: BaseException) -> None:
        """Move to FAILED after an unrecoverable source error.

        The engine is not restarted automatically.
        """
        with self._lock:
            self._set_status(
                replace(
                    self._status,
                    state=EngineState.FAILED,
                    stopped_at=self._clock(),
                    error_message=str(error),
                )
            )
        logger.error("capture engine failed: %s", error)

    # ------------------------------------------------------------------
    # Stop

    def stop(self, reason: StopReason = StopReason.GRACEFUL_SHUTDOWN) -> StopResult:
        with self._lock:
            state = self._status.state
            if state is not EngineState.RUNNING:
                raise IllegalStateError(
                    f"capture engine is not running (state={state.value}); cannot stop"
                )
            snapshot = self._status
            configuration = self._configuration
            positions = dict(self._positions)
            self._set_status(replace(self._status, state=EngineState.STOPPING))

        started = self._clock()
        logger.info("stopping capture engine; reason: %s", reason.value)
        self._save_final_positions(positions)
        self._stop_source()
        final_position = self._finish_stop(configuration, reason, positions)

        duration = (self._clock() - started).total_seconds()
        logger.info(
            "capture stopped in %.3fs after %d event(s)",
            duration,
            snapshot.events_captured,
        )
        if snapshot.started_at is not None:
            uptime = self._clock() - snapshot.started_at
            logger.info("capture uptime %s", uptime)
        return StopResult(
            success=True,
            shutdown_duration_seconds=duration,
            events_captured=snapshot.events_captured,
            final_position=final_position,
            reason=reason,
        )

    def force_stop(self) -> StopResult:
        """Stop without persisting final positions; recent progress may be lost."""
        with self._lock:
            state = self._status.state
            if state is EngineState.STOPPED:
                raise IllegalStateError("capture engine is already stopped")
            snapshot = self._status
            configuration = self._configuration
            positions = dict(self._positions)
            self._set_status(replace(self._status, state=EngineState.STOPPING))

        logger.warning("force stopping capture engine; data loss may occur")
        started = self._clock()
        self._stop_source()
        final_position = self._finish_stop(configuration, StopReason.ERROR, positions)
        return StopResult(
            success=True,
            shutdown_duration_seconds=(self._clock() - started).total_seconds(),
            events_captured=snapshot.events_captured,
            final_position=final_position,
            reason=StopReason.ERROR,
        )

    def restart(
        self,
        configuration: "ConfigurationAggregate",
        reason: StopReason = StopReason.MANUAL_STOP,
    ) -> None:
        if self._status.state is EngineState.RUNNING:
            self.stop(reason)
        self.start(configuration)

    def _save_final_positions(self, positions: Dict[str, CdcPosition]) -> None:
        if not positions:
            logger.debug("no positions captured; nothing to checkpoint")
            return
        for partition, position in positions.items():
            try:
                self._offset_store.save(position)
                logger.info("saved final position for partition %s", partition)
            except Exception as exc:  # noqa: BLE001 - shutdown continues
                logger.error(
                    "failed to save final position for partition %s: %s", partition, exc
                )

    def _stop_source(self) -> None:
        try:
            self._source.stop(timeout=self._drain_timeout)
        except Exception as exc:  # noqa: BLE001 - reported as EngineError
            with self._lock:
                self._set_status(
                    replace(
                        self._status,
                        state=EngineState.FAILED,
                        stopped_at=self._clock(),
                        error_message=str(exc),
                    )
                )
            logger.error("failed to stop capture source cleanly: %s", exc)
            raise EngineError(f"failed to stop capture source: {exc}") from exc

    def _finish_stop(
        self,
        configuration: Optional["ConfigurationAggregate"],
        reason: StopReason,
        positions: Dict[str, CdcPosition],
    ) -> Optional[CdcPosition]:
        with self._lock:
            self._set_status(
                replace(self._status, state=EngineState.STOPPED, stopped_at=self._clock())
            )
        if configuration is None:
            return None
        partition = source_partition_for(configuration.database)
        final_position = self._reload_position(partition, positions)
        for table_config in configuration.tables:
            self._notify(
                CaptureStopped(
                    table=table_config.table,
                    final_position=final_position,
                    reason=reason,
                )
            )
        return final_position

    def _reload_position(
        self, partition: str, positions: Dict[str, CdcPosition]
    ) -> Optional[CdcPosition]:
        try:
            stored = self._offset_store.load(partition)
        except Exception as exc:  # noqa: BLE001 - best effort only
            logger.warning("failed to reload position for partition %s: %s", partition, exc)
            stored = None
        return stored if stored is not None else positions.get(partition)

    def _notify(self, notification: object) -> None:
        table = getattr(notification, "table", None)
        try:
            self._notifier.publish(notification)
        except Exception:  # noqa: BLE001 - one table must not block the others
            logger.warning(
                "failed to publish %s for table %s",
                type(notification).__name__,
                table,
                exc_info=True,
            )


__all__ = [
    "CaptureEngine",
    "EngineError",
    "EngineState",
    "EngineStatus",
    "IllegalStateError",
    "StopReason",
    "StopResult",
    "source_partition_for",
]
