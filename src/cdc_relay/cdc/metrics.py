"""Prometheus metrics for the capture-to-delivery pipeline."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

_ENGINE_STATES = ("STOPPED", "STARTING", "RUNNING", "STOPPING", "FAILED")


class PipelineMetrics:
    """Wraps Prometheus collectors and mirrors them in a plain snapshot.

    Each instance owns its registry so several relays (or tests) can coexist
    in one process without duplicate-metric errors.
    """

    def __init__(
        self,
        namespace: str = "cdc_relay",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self._lock = Lock()
        self._snapshot: Dict[str, float] = defaultdict(float)
        self._processed = Counter(
            f"{namespace}_events_processed_total",
            "Change events published and checkpointed",
            registry=self.registry,
        )
        self._failed = Counter(
            f"{namespace}_events_failed_total",
            "Change events that failed normalisation or publishing",
            registry=self.registry,
        )
        self._checkpoint_failures = Counter(
            f"{namespace}_checkpoint_failures_total",
            "Offset saves that failed after a successful publish",
            registry=self.registry,
        )
        self._publish_retries = Counter(
            f"{namespace}_publish_retries_total",
            "Publish attempts retried after a delivery failure",
            registry=self.registry,
        )
        self._processing_seconds = Histogram(
            f"{namespace}_processing_seconds",
            "Time spent normalising, publishing and checkpointing one event",
            registry=self.registry,
        )
        self._engine_state = Gauge(
            f"{namespace}_engine_state",
            "Capture engine state (1 for the current state)",
            ["state"],
            registry=self.registry,
        )

    def _bump(self, key: str, amount: float) -> None:
        with self._lock:
            self._snapshot[key] += amount

    def inc_processed(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._processed.inc(amount)
        self._bump("events_processed_total", amount)

    def inc_failed(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._failed.inc(amount)
        self._bump("events_failed_total", amount)

    def inc_checkpoint_failures(self) -> None:
        self._checkpoint_failures.inc()
        self._bump("checkpoint_failures_total", 1)

    def inc_publish_retries(self) -> None:
        self._publish_retries.inc()
        self._bump("publish_retries_total", 1)

    def observe_processing(self, seconds: float) -> None:
        self._processing_seconds.observe(seconds)
        self._bump("processing_seconds_sum", seconds)

    def set_engine_state(self, state: str) -> None:
        for candidate in _ENGINE_STATES:
            self._engine_state.labels(state=candidate).set(
                1 if candidate == state else 0
            )
        with self._lock:
            self._snapshot["engine_state"] = float(_ENGINE_STATES.index(state))

    def snapshot(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._snapshot)


__all__ = ["PipelineMetrics"]
