"""Health snapshot for monitoring collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from .cdc.checkpoint import OffsetStore
from .cdc.engine import CaptureEngine, EngineState

logger = logging.getLogger(__name__)


class HealthState(str, Enum):
    UP = "UP"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"
    UNKNOWN = "UNKNOWN"


_ENGINE_HEALTH = {
    EngineState.RUNNING: HealthState.UP,
    EngineState.STARTING: HealthState.DEGRADED,
    EngineState.STOPPING: HealthState.DEGRADED,
    EngineState.STOPPED: HealthState.DOWN,
    EngineState.FAILED: HealthState.DOWN,
}

_ENGINE_MESSAGES = {
    EngineState.RUNNING: "capturing changes from monitored tables",
    EngineState.STARTING: "starting",
    EngineState.STOPPING: "stopping",
    EngineState.STOPPED: "not running",
}


@dataclass(frozen=True)
class ComponentHealth:
    name: str
    state: HealthState
    message: str
    details: Dict[str, object] = field(default_factory=dict, hash=False)
    error: Optional[str] = None


@dataclass(frozen=True)
class HealthReport:
    state: HealthState
    components: Tuple[ComponentHealth, ...]
    checked_at: datetime

    def component(self, name: str) -> Optional[ComponentHealth]:
        for component in self.components:
            if component.name == name:
                return component
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "checkedAt": self.checked_at.isoformat().replace("+00:00", "Z"),
            "components": {
                component.name: {
                    "state": component.state.value,
                    "message": component.message,
                    "details": dict(component.details),
                    "error": component.error,
                }
                for component in self.components
            },
        }


def _overall(components: Iterable[ComponentHealth]) -> HealthState:
    states = {component.state for component in components}
    if HealthState.DOWN in states:
        return HealthState.DOWN
    if HealthState.DEGRADED in states or HealthState.UNKNOWN in states:
        return HealthState.DEGRADED
    return HealthState.UP


def _engine_health(engine: CaptureEngine) -> ComponentHealth:
    status = engine.status()
    if status.state is EngineState.FAILED:
        message = f"engine failed: {status.error_message or 'unknown error'}"
    else:
        message = _ENGINE_MESSAGES[status.state]
    configuration = engine.configuration
    return ComponentHealth(
        name="engine",
        state=_ENGINE_HEALTH[status.state],
        message=message,
        details={
            "state": status.state.value,
            "eventsCaptured": status.events_captured,
            "startedAt": status.started_at.isoformat() if status.started_at else None,
            "stoppedAt": status.stopped_at.isoformat() if status.stopped_at else None,
            "currentPosition": (
                status.current_position.to_dict()
                if status.current_position is not None
                else None
            ),
            "monitoredTables": len(configuration.tables) if configuration else 0,
        },
        error=status.error_message,
    )


def _checkpoint_health(
    offset_store: OffsetStore, partitions: Optional[Iterable[str]]
) -> ComponentHealth:
    try:
        names = list(partitions) if partitions is not None else offset_store.partitions()
        offsets: Dict[str, object] = {}
        for partition in names:
            position = offset_store.load(partition)
            offsets[partition] = dict(position.offset) if position is not None else None
    except Exception as exc:  # noqa: BLE001 - reported as DOWN
        logger.error("offset store health check failed: %s", exc)
        return ComponentHealth(
            name="checkpoint",
            state=HealthState.DOWN,
            message="offset store unavailable",
            error=str(exc),
        )
    return ComponentHealth(
        name="checkpoint",
        state=HealthState.UP,
        message=f"{len(offsets)} partition(s) tracked",
        details={"offsets": offsets},
    )


def check_health(
    engine: CaptureEngine,
    offset_store: OffsetStore,
    partitions: Optional[Iterable[str]] = None,
) -> HealthReport:
    components = (_engine_health(engine), _checkpoint_health(offset_store, partitions))
    report = HealthReport(
        state=_overall(components),
        components=components,
        checked_at=datetime.now(timezone.utc),
    )
    logger.debug("health check completed: %s", report.state.value)
    return report


__all__ = ["ComponentHealth", "HealthReport", "HealthState", "check_health"]
