import threading
from typing import List

import pytest
import yaml

from cdc_relay.configuration import ConfigurationError, ConfigurationLoader
from cdc_relay.model import TableIdentifier
from cdc_relay.notifications import ConfigurationChanged, ConfigurationLoaded, NotificationBus
from cdc_relay.watcher import ConfigurationChange, ConfigurationWatcher


class RecordingBus(NotificationBus):
    def __init__(self) -> None:
        super().__init__()
        self.seen: List[object] = []
        self.subscribe(self.seen.append)


@pytest.fixture
def config_file(tmp_path, make_document):
    path = tmp_path / "cdc-config.yml"

    def _write(*args, **kwargs):
        path.write_text(yaml.safe_dump(make_document(*args, **kwargs)), encoding="utf-8")
        return path

    _write()
    return _write


def _watcher(path, bus=None, interval=30.0) -> ConfigurationWatcher:
    return ConfigurationWatcher(
        ConfigurationLoader(path), interval_seconds=interval, notifier=bus
    )


def _table(name: str) -> TableIdentifier:
    return TableIdentifier("inventory", "public", name)


@pytest.mark.unit
def test_load_initial_sets_current_and_notifies(config_file):
    bus = RecordingBus()
    watcher = _watcher(config_file(), bus)

    configuration = watcher.load_initial()

    assert watcher.current is configuration
    assert [type(item) for item in bus.seen] == [ConfigurationLoaded]
    assert bus.seen[0].configuration is configuration


@pytest.mark.unit
def test_load_initial_rejects_invalid_configuration(config_file):
    watcher = _watcher(config_file(username=""))

    with pytest.raises(ConfigurationError) as excinfo:
        watcher.load_initial()

    assert "database username cannot be empty" in str(excinfo.value)
    assert watcher.current is None


@pytest.mark.unit
def test_unchanged_document_reports_no_change(config_file):
    watcher = _watcher(config_file())
    watcher.load_initial()

    assert watcher.check_for_changes() is None


@pytest.mark.unit
def test_table_changes_are_reported_to_listeners(config_file):
    bus = RecordingBus()
    watcher = _watcher(config_file(["public.customers", "public.orders"]), bus)
    initial = watcher.load_initial()
    changes: List[ConfigurationChange] = []
    watcher.add_listener(changes.append)

    config_file(["public.customers", "public.invoices"])
    change = watcher.check_for_changes()

    assert change is not None
    assert change.previous is initial
    assert change.added_tables == frozenset({_table("invoices")})
    assert change.removed_tables == frozenset({_table("orders")})
    assert change.tables_changed
    assert changes == [change]
    assert watcher.current is change.current
    notice = bus.seen[-1]
    assert isinstance(notice, ConfigurationChanged)
    assert notice.added_tables == change.added_tables


@pytest.mark.unit
def test_kafka_only_change_is_reported_without_table_changes(config_file):
    watcher = _watcher(config_file())
    watcher.load_initial()

    config_file(brokers=["kafka-2:9092"])
    change = watcher.check_for_changes()

    assert change is not None
    assert not change.tables_changed
    assert change.current.kafka.brokers == ("kafka-2:9092",)


@pytest.mark.unit
@pytest.mark.parametrize(
    "breakage",
    [
        lambda path, write: write(brokers=["kafka-without-port"]),
        lambda path, write: path.write_text("database: [unclosed", encoding="utf-8"),
        lambda path, write: path.unlink(),
    ],
)
def test_broken_reload_keeps_current_configuration(config_file, breakage):
    path = config_file()
    watcher = _watcher(path)
    initial = watcher.load_initial()

    breakage(path, config_file)

    assert watcher.check_for_changes() is None
    assert watcher.current is initial


@pytest.mark.unit
def test_first_check_without_initial_load_only_records_configuration(config_file):
    bus = RecordingBus()
    watcher = _watcher(config_file(), bus)

    assert watcher.check_for_changes() is None
    assert watcher.current is not None
    assert [type(item) for item in bus.seen] == [ConfigurationLoaded]


@pytest.mark.unit
def test_failing_listener_does_not_block_others(config_file):
    watcher = _watcher(config_file())
    watcher.load_initial()
    received: List[ConfigurationChange] = []

    def _broken(_change):
        raise RuntimeError("listener down")

    watcher.add_listener(_broken)
    watcher.add_listener(received.append)

    config_file(["public.customers"])
    change = watcher.check_for_changes()

    assert received == [change]


@pytest.mark.unit
def test_background_thread_polls_for_changes(config_file):
    watcher = _watcher(config_file(), interval=0.01)
    watcher.load_initial()
    seen = threading.Event()
    watcher.add_listener(lambda _change: seen.set())

    watcher.start()
    try:
        config_file(["public.customers"])
        assert seen.wait(5)
    finally:
        watcher.stop()

    assert watcher.current.table_identifiers == frozenset({_table("customers")})
