"""Interval-driven configuration reload and change detection."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional

from .configuration import (
    ConfigurationAggregate,
    ConfigurationError,
    ConfigurationLoader,
    ConfigurationValidator,
)
from .model import TableIdentifier
from .notifications import ConfigurationChanged, ConfigurationLoaded, NotificationBus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigurationChange:
    previous: ConfigurationAggregate
    current: ConfigurationAggregate
    added_tables: FrozenSet[TableIdentifier]
    removed_tables: FrozenSet[TableIdentifier]

    @property
    def tables_changed(self) -> bool:
        return bool(self.added_tables or self.removed_tables)


ChangeListener = Callable[[ConfigurationChange], None]


class ConfigurationWatcher:
    """Keeps the active configuration and reports revisions to listeners.

    A reloaded document replaces the active configuration only when it
    loads and validates cleanly; otherwise the previous one stays in force.
    """

    def __init__(
        self,
        loader: ConfigurationLoader,
        validator: Optional[ConfigurationValidator] = None,
        *,
        interval_seconds: float = 30.0,
        notifier: Optional[NotificationBus] = None,
    ) -> None:
        self._loader = loader
        self._validator = validator or ConfigurationValidator()
        self._interval = interval_seconds
        self._notifier = notifier
        self._lock = threading.Lock()
        self._current: Optional[ConfigurationAggregate] = None
        self._listeners: List[ChangeListener] = []
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def current(self) -> Optional[ConfigurationAggregate]:
        return self._current

    def add_listener(self, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def load_initial(self) -> ConfigurationAggregate:
        configuration = self._loader.load()
        result = self._validator.validate(configuration)
        for warning in result.warnings:
            logger.warning("configuration warning: %s", warning)
        if not result.is_valid:
            raise ConfigurationError(
                f"configuration is invalid:\n{result.summary()}"
            )
        with self._lock:
            self._current = configuration
        self._notify(ConfigurationLoaded(configuration=configuration))
        return configuration

    def check_for_changes(self) -> Optional[ConfigurationChange]:
        try:
            candidate = self._loader.load()
        except ConfigurationError as exc:
            logger.error("configuration reload failed; keeping current: %s", exc)
            return None
        result = self._validator.validate(candidate)
        if not result.is_valid:
            logger.error(
                "reloaded configuration is invalid; keeping current:\n%s",
                result.summary(),
            )
            return None

        with self._lock:
            previous = self._current
            if previous is None:
                self._current = candidate
            elif not (
                candidate.added_tables(previous)
                or candidate.removed_tables(previous)
                or candidate.has_changed_since(previous)
            ):
                return None
            else:
                self._current = candidate
            listeners = list(self._listeners)

        if previous is None:
            self._notify(ConfigurationLoaded(configuration=candidate))
            return None

        change = ConfigurationChange(
            previous=previous,
            current=candidate,
            added_tables=candidate.added_tables(previous),
            removed_tables=candidate.removed_tables(previous),
        )
        logger.info(
            "configuration changed: %d table(s) added, %d removed",
            len(change.added_tables),
            len(change.removed_tables),
        )
        self._notify(
            ConfigurationChanged(
                previous=previous,
                current=candidate,
                added_tables=change.added_tables,
                removed_tables=change.removed_tables,
            )
        )
        for listener in listeners:
            try:
                listener(change)
            except Exception:  # noqa: BLE001 - listeners are isolated
                logger.exception("configuration change listener failed")
        return change

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="cdc-config-watcher", daemon=True
        )
        self._thread.start()
        logger.info(
            "watching %s every %.1fs", self._loader.path, self._interval
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.check_for_changes()
            except Exception:  # noqa: BLE001 - keep watching
                logger.exception("configuration check failed")

    def _notify(self, notification: object) -> None:
        if self._notifier is not None:
            self._notifier.publish(notification)


__all__ = ["ConfigurationChange", "ConfigurationWatcher"]
