from datetime import datetime, timezone
from typing import List, Optional

import pytest

from cdc_relay.cdc.checkpoint import InMemoryOffsetStore, OffsetStoreError
from cdc_relay.cdc.engine import (
    CaptureEngine,
    EngineError,
    EngineState,
    IllegalStateError,
    StopReason,
    source_partition_for,
)
from cdc_relay.cdc.metrics import PipelineMetrics
from cdc_relay.configuration import ConfigurationAggregate
from cdc_relay.model import CdcPosition, ChangeEvent, TableIdentifier
from cdc_relay.notifications import CaptureStarted, CaptureStopped

PARTITION = "db-internal-inventory"


class FakeSource:
    def __init__(self, start_error: Optional[Exception] = None, stop_error: Optional[Exception] = None):
        self.start_error = start_error
        self.stop_error = stop_error
        self.started_with: List[Optional[CdcPosition]] = []
        self.stop_timeouts: List[float] = []
        self.handler = None
        self.running = False

    def start(self, handler, resume_position):
        if self.start_error is not None:
            raise self.start_error
        self.handler = handler
        self.started_with.append(resume_position)
        self.running = True

    def stop(self, timeout):
        self.stop_timeouts.append(timeout)
        if self.stop_error is not None:
            raise self.stop_error
        self.running = False

    def is_running(self):
        return self.running


class RecordingStore(InMemoryOffsetStore):
    def __init__(self, fail_save: bool = False, fail_load: bool = False):
        super().__init__()
        self.fail_save = fail_save
        self.fail_load = fail_load
        self.saves: List[CdcPosition] = []

    def save(self, position):
        self.saves.append(position)
        if self.fail_save:
            raise OffsetStoreError("disk full")
        super().save(position)

    def load(self, source_partition):
        if self.fail_load:
            raise OffsetStoreError("unreadable")
        return super().load(source_partition)


class RecordingNotifier:
    def __init__(self, failing_table: Optional[str] = None):
        self.failing_table = failing_table
        self.notifications: List[object] = []

    def publish(self, notification):
        table = getattr(notification, "table", None)
        if table is not None and table.table == self.failing_table:
            raise RuntimeError("listener down")
        self.notifications.append(notification)

    def of_type(self, kind):
        return [item for item in self.notifications if isinstance(item, kind)]


def _event(ts_ms: int, table: str = "customers") -> ChangeEvent:
    return ChangeEvent.create(
        table=TableIdentifier("inventory", "public", table),
        operation="INSERT",
        position=CdcPosition(PARTITION, {"ts_ms": ts_ms}),
        timestamp=datetime(2024, 1, 15, tzinfo=timezone.utc),
        after={"id": ts_ms},
    )


def _engine(source=None, store=None, notifier=None, **kwargs) -> CaptureEngine:
    return CaptureEngine(
        source or FakeSource(),
        store if store is not None else RecordingStore(),
        notifier or RecordingNotifier(),
        drain_timeout_seconds=5.0,
        **kwargs,
    )


@pytest.mark.unit
def test_source_partition_is_derived_from_host_and_database(make_configuration):
    configuration = make_configuration(host="db.internal:5432")

    assert source_partition_for(configuration.database) == "db-internal-5432-inventory"


@pytest.mark.unit
def test_start_from_scratch_notifies_each_table(make_configuration):
    source = FakeSource()
    notifier = RecordingNotifier()
    metrics = PipelineMetrics()
    engine = _engine(source, notifier=notifier, metrics=metrics)
    configuration = make_configuration()

    engine.start(configuration)

    assert engine.is_running()
    assert engine.configuration is configuration
    assert source.started_with == [None]
    started = notifier.of_type(CaptureStarted)
    assert [item.table.table for item in started] == ["customers", "orders"]
    assert all(item.position is None for item in started)
    assert metrics.snapshot()["engine_state"] == 2.0


@pytest.mark.unit
def test_start_resumes_from_stored_position(make_configuration):
    store = RecordingStore()
    saved = CdcPosition(PARTITION, {"ts_ms": 5000})
    store.save(saved)
    source = FakeSource()
    engine = _engine(source, store)

    engine.start(make_configuration())

    assert source.started_with == [saved]
    assert engine.status().current_position == saved


@pytest.mark.unit
def test_unreadable_resume_position_starts_fresh(make_configuration):
    source = FakeSource()
    engine = _engine(source, RecordingStore(fail_load=True))

    engine.start(make_configuration())

    assert engine.is_running()
    assert source.started_with == [None]


@pytest.mark.unit
def test_start_while_running_is_ignored(make_configuration):
    source = FakeSource()
    engine = _engine(source)
    engine.start(make_configuration())

    engine.start(make_configuration(tables=["public.other"]))

    assert len(source.started_with) == 1
    assert engine.status().state is EngineState.RUNNING


@pytest.mark.unit
def test_start_failure_moves_to_failed(make_configuration):
    notifier = RecordingNotifier()
    engine = _engine(FakeSource(start_error=RuntimeError("slot busy")), notifier=notifier)

    with pytest.raises(EngineError):
        engine.start(make_configuration())

    status = engine.status()
    assert status.state is EngineState.FAILED
    assert "slot busy" in status.error_message
    assert notifier.notifications == []


@pytest.mark.unit
def test_start_rejects_configuration_with_duplicate_tables(make_configuration):
    base = make_configuration()
    duplicated = ConfigurationAggregate(
        database=base.database,
        tables=base.tables + base.tables[:1],
        kafka=base.kafka,
    )
    source = FakeSource()
    engine = _engine(source)

    with pytest.raises(EngineError):
        engine.start(duplicated)

    assert source.started_with == []
    assert engine.status().state is EngineState.FAILED


@pytest.mark.unit
def test_events_are_handled_then_recorded(make_configuration):
    handled: List[ChangeEvent] = []
    source = FakeSource()
    engine = _engine(source, handler=handled.append)
    engine.start(make_configuration())

    source.handler(_event(1000))
    source.handler(_event(2000))

    assert [event.position.offset["ts_ms"] for event in handled] == [1000, 2000]
    status = engine.status()
    assert status.events_captured == 2
    assert status.current_position == CdcPosition(PARTITION, {"ts_ms": 2000})


@pytest.mark.unit
def test_handler_failure_is_not_recorded(make_configuration):
    def _fail(_event):
        raise RuntimeError("publish failed")

    source = FakeSource()
    engine = _engine(source, handler=_fail)
    engine.start(make_configuration())

    with pytest.raises(RuntimeError):
        source.handler(_event(1000))

    assert engine.status().events_captured == 0


@pytest.mark.unit
def test_stop_checkpoints_then_stops_source_and_notifies(make_configuration):
    source = FakeSource()
    store = RecordingStore()
    notifier = RecordingNotifier()
    engine = _engine(source, store, notifier)
    engine.start(make_configuration())
    source.handler(_event(1000))
    source.handler(_event(2000))

    result = engine.stop(StopReason.GRACEFUL_SHUTDOWN)

    assert store.saves == [CdcPosition(PARTITION, {"ts_ms": 2000})]
    assert source.stop_timeouts == [5.0]
    assert engine.status().state is EngineState.STOPPED
    assert engine.status().stopped_at is not None
    assert result.success
    assert result.events_captured == 2
    assert result.reason is StopReason.GRACEFUL_SHUTDOWN
    assert result.final_position == CdcPosition(PARTITION, {"ts_ms": 2000})
    assert result.shutdown_duration_seconds >= 0
    stopped = notifier.of_type(CaptureStopped)
    assert [item.table.table for item in stopped] == ["customers", "orders"]
    assert all(item.reason is StopReason.GRACEFUL_SHUTDOWN for item in stopped)


@pytest.mark.unit
def test_stop_when_not_running_has_no_side_effects(make_configuration):
    source = FakeSource()
    store = RecordingStore()
    notifier = RecordingNotifier()
    engine = _engine(source, store, notifier)

    with pytest.raises(IllegalStateError):
        engine.stop()

    assert store.saves == []
    assert source.stop_timeouts == []
    assert notifier.notifications == []
    assert engine.status().state is EngineState.STOPPED


@pytest.mark.unit
def test_stop_continues_when_final_checkpoint_fails(make_configuration):
    source = FakeSource()
    engine = _engine(source, RecordingStore(fail_save=True))
    engine.start(make_configuration())
    source.handler(_event(1000))

    result = engine.stop()

    assert result.success
    assert source.stop_timeouts == [5.0]
    assert engine.status().state is EngineState.STOPPED
    assert result.final_position == CdcPosition(PARTITION, {"ts_ms": 1000})


@pytest.mark.unit
def test_failing_notification_does_not_block_other_tables(make_configuration):
    notifier = RecordingNotifier(failing_table="customers")
    engine = _engine(notifier=notifier)
    engine.start(make_configuration())

    engine.stop()

    assert [item.table.table for item in notifier.of_type(CaptureStarted)] == ["orders"]
    assert [item.table.table for item in notifier.of_type(CaptureStopped)] == ["orders"]
    assert engine.status().state is EngineState.STOPPED


@pytest.mark.unit
def test_source_stop_failure_moves_to_failed(make_configuration):
    source = FakeSource(stop_error=RuntimeError("stuck"))
    notifier = RecordingNotifier()
    engine = _engine(source, notifier=notifier)
    engine.start(make_configuration())

    with pytest.raises(EngineError):
        engine.stop()

    assert engine.status().state is EngineState.FAILED
    assert notifier.of_type(CaptureStopped) == []


@pytest.mark.unit
def test_force_stop_skips_checkpoint(make_configuration):
    source = FakeSource()
    store = RecordingStore()
    notifier = RecordingNotifier()
    engine = _engine(source, store, notifier)
    engine.start(make_configuration())
    source.handler(_event(1000))
    engine.fail(RuntimeError("stream closed"))

    result = engine.force_stop()

    assert store.saves == []
    assert result.reason is StopReason.ERROR
    assert engine.status().state is EngineState.STOPPED
    assert all(item.reason is StopReason.ERROR for item in notifier.of_type(CaptureStopped))
    with pytest.raises(IllegalStateError):
        engine.force_stop()


@pytest.mark.unit
def test_fail_records_error_and_allows_start(make_configuration):
    source = FakeSource()
    engine = _engine(source)
    engine.start(make_configuration())

    engine.fail(RuntimeError("connection reset"))

    assert engine.status().state is EngineState.FAILED
    assert engine.status().error_message == "connection reset"
    with pytest.raises(IllegalStateError):
        engine.stop()

    engine.start(make_configuration())
    assert engine.is_running()
    assert len(source.started_with) == 2


@pytest.mark.unit
def test_restart_stops_then_starts_with_new_configuration(make_configuration):
    source = FakeSource()
    store = RecordingStore()
    notifier = RecordingNotifier()
    engine = _engine(source, store, notifier)
    engine.start(make_configuration())
    source.handler(_event(1000))
    updated = make_configuration(tables=["public.customers", "public.invoices"])

    engine.restart(updated, StopReason.CONFIGURATION_CHANGE)

    assert engine.is_running()
    assert engine.configuration is updated
    assert source.started_with == [None, CdcPosition(PARTITION, {"ts_ms": 1000})]
    stopped = notifier.of_type(CaptureStopped)
    assert all(item.reason is StopReason.CONFIGURATION_CHANGE for item in stopped)
    assert [item.table.table for item in notifier.of_type(CaptureStarted)][-2:] == [
        "customers",
        "invoices",
    ]
