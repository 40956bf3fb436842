"""Normalise, publish and checkpoint change events."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Iterable, Optional

from ..model import ChangeEvent, DatabaseType
from .checkpoint import OffsetStore
from .metrics import PipelineMetrics
from .normalizer import DataNormalizer, NormalizationError
from .publisher import KafkaEventPublisher, PublishError

logger = logging.getLogger(__name__)


class ProcessingError(RuntimeError):
    """Raised when an event could not be normalised or published.

    The event's position is not checkpointed, so the capture source will
    replay it after a restart.
    """

    def __init__(self, message: str, *, event: ChangeEvent, stage: str) -> None:
        super().__init__(message)
        self.event = event
        self.stage = stage


@dataclass(frozen=True)
class BatchResult:
    success_count: int
    failure_count: int
    total_duration_seconds: float

    @property
    def total_processed(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        total = self.total_processed
        if total == 0:
            return 0.0
        return self.success_count / total

    @property
    def average_processing_ms(self) -> float:
        total = self.total_processed
        if total == 0:
            return 0.0
        return self.total_duration_seconds * 1000.0 / total


class EventProcessor:
    """Runs the per-event normalise, publish, checkpoint sequence.

    Calls for one source partition are serialised by an internal lock so
    checkpoints for that partition are written in delivery order; calls for
    different partitions may run concurrently.
    """

    def __init__(
        self,
        normalizer: DataNormalizer,
        publisher: KafkaEventPublisher,
        offset_store: OffsetStore,
        metrics: Optional[PipelineMetrics] = None,
        *,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._normalizer = normalizer
        self._publisher = publisher
        self._offset_store = offset_store
        self._metrics = metrics
        self._clock = clock
        self._locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

    def _partition_lock(self, partition: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(partition)
            if lock is None:
                lock = Lock()
                self._locks[partition] = lock
            return lock

    def process(
        self,
        event: ChangeEvent,
        database_type: DatabaseType = DatabaseType.POSTGRESQL,
    ) -> None:
        started = self._clock()
        try:
            with self._partition_lock(event.position.source_partition):
                self._process_locked(event, database_type)
        except ProcessingError:
            if self._metrics is not None:
                self._metrics.inc_failed()
            raise
        finally:
            if self._metrics is not None:
                self._metrics.observe_processing(self._clock() - started)
        if self._metrics is not None:
            self._metrics.inc_processed()

    def _process_locked(self, event: ChangeEvent, database_type: DatabaseType) -> None:
        try:
            before = (
                self._normalizer.normalize(event.before.fields, database_type)
                if event.before is not None
                else None
            )
            after = (
                self._normalizer.normalize(event.after.fields, database_type)
                if event.after is not None
                else None
            )
        except NormalizationError as exc:
            logger.error("failed to normalize event for %s: %s", event.table, exc)
            raise ProcessingError(
                f"failed to normalize event for {event.table}",
                event=event,
                stage="normalize",
            ) from exc
        normalized = event.replace_rows(before, after)

        try:
            self._publisher.publish(normalized)
        except PublishError as exc:
            logger.error("failed to publish event for %s: %s", event.table, exc)
            raise ProcessingError(
                f"failed to publish event for {event.table}",
                event=event,
                stage="publish",
            ) from exc

        try:
            self._offset_store.save(event.position)
        except Exception as exc:  # noqa: BLE001 - event already delivered
            if self._metrics is not None:
                self._metrics.inc_checkpoint_failures()
            logger.warning(
                "failed to checkpoint position for partition %s after publish: %s",
                event.position.source_partition,
                exc,
            )

    def process_batch(
        self,
        events: Iterable[ChangeEvent],
        database_type: DatabaseType = DatabaseType.POSTGRESQL,
    ) -> BatchResult:
        started = self._clock()
        success = 0
        failure = 0
        for event in events:
            try:
                self.process(event, database_type)
            except ProcessingError as exc:
                failure += 1
                logger.warning("batch event for %s failed: %s", event.table, exc)
            except Exception:  # noqa: BLE001 - batch continues past failures
                failure += 1
                logger.exception("unexpected error processing event for %s", event.table)
            else:
                success += 1
        result = BatchResult(
            success_count=success,
            failure_count=failure,
            total_duration_seconds=self._clock() - started,
        )
        logger.info(
            "processed batch of %d events: %d succeeded, %d failed",
            result.total_processed,
            success,
            failure,
        )
        return result


__all__ = ["BatchResult", "EventProcessor", "ProcessingError"]
