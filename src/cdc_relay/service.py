"""Runtime wiring and process entrypoint for the CDC relay."""

from __future__ import annotations

import logging
import signal
import threading
from typing import Dict, Optional

from prometheus_client import start_http_server

from .cdc.checkpoint import build_offset_store
from .cdc.engine import (
    CaptureEngine,
    EngineState,
    IllegalStateError,
    StopReason,
    source_partition_for,
)
from .cdc.metrics import PipelineMetrics
from .cdc.normalizer import DataNormalizer
from .cdc.pipeline import EventProcessor
from .cdc.publisher import KafkaEventPublisher, build_producer
from .cdc.source import (
    DebeziumEnvelopeDecoder,
    StreamCaptureSource,
    StreamFactory,
    kafka_envelope_stream,
)
from .cdc.topics import TopicNameResolver
from .config import Settings, load_settings
from .configuration import (
    ConfigurationAggregate,
    ConfigurationError,
    ConfigurationLoader,
    ConfigurationValidator,
    TableConfig,
)
from .health import HealthReport, check_health
from .model import ChangeEvent, TableIdentifier
from .notifications import NotificationBus
from .watcher import ConfigurationChange, ConfigurationWatcher

logger = logging.getLogger(__name__)


class RelayRuntime:
    """Builds the relay from settings and keeps it running until shutdown.

    Table additions or removals picked up by the configuration watcher
    restart the capture engine with the new document. Changes to the Kafka
    section are logged and apply on the next process start.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        loader: Optional[ConfigurationLoader] = None,
        producer=None,
        stream_factory: Optional[StreamFactory] = None,
        metrics: Optional[PipelineMetrics] = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or PipelineMetrics()
        self.notifier = NotificationBus()
        self.notifier.subscribe(self._log_notification)
        self.offset_store = build_offset_store(settings)
        self.watcher = ConfigurationWatcher(
            loader or ConfigurationLoader(settings.config_path),
            ConfigurationValidator(),
            interval_seconds=settings.config_reload_seconds,
            notifier=self.notifier,
        )
        self._producer = producer
        self._stream_factory = stream_factory
        self._stop_event = threading.Event()
        self._restart_lock = threading.Lock()
        self._tables: Dict[TableIdentifier, TableConfig] = {}
        self.publisher: Optional[KafkaEventPublisher] = None
        self.processor: Optional[EventProcessor] = None
        self.source: Optional[StreamCaptureSource] = None
        self.engine: Optional[CaptureEngine] = None

    def build(self) -> ConfigurationAggregate:
        configuration = self.watcher.load_initial()
        producer = self._producer or build_producer(configuration.kafka)
        self.publisher = KafkaEventPublisher(
            producer,
            TopicNameResolver(configuration.kafka.topic_pattern),
            max_attempts=self.settings.publish_attempts,
            retry_delay_seconds=self.settings.publish_retry_delay_seconds,
            send_timeout_seconds=self.settings.publish_timeout_seconds,
            async_workers=self.settings.publish_workers,
            metrics=self.metrics,
        )
        self.processor = EventProcessor(
            DataNormalizer(), self.publisher, self.offset_store, self.metrics
        )
        self.source = StreamCaptureSource(
            self._stream_factory or self._kafka_stream(configuration),
            self._decoder_for(configuration),
        )
        self.engine = CaptureEngine(
            self.source,
            self.offset_store,
            self.notifier,
            handler=self._handle_event,
            drain_timeout_seconds=self.settings.drain_timeout_seconds,
            metrics=self.metrics,
        )
        self.source.set_error_handler(self.engine.fail)
        self.watcher.add_listener(self._on_configuration_change)
        self._index_tables(configuration)
        return configuration

    def start(self) -> None:
        configuration = self.build()
        assert self.engine is not None
        self.engine.start(configuration)
        self.watcher.start()

    def run(self) -> None:
        self._install_signal_handlers()
        if self.settings.metrics_port > 0:
            start_http_server(self.settings.metrics_port, registry=self.metrics.registry)
            logger.info("metrics exposed on port %d", self.settings.metrics_port)
        self.start()
        try:
            while not self._stop_event.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("shutdown requested (KeyboardInterrupt)")
        finally:
            self.stop(StopReason.APPLICATION_SHUTDOWN)

    def stop(self, reason: StopReason = StopReason.GRACEFUL_SHUTDOWN) -> None:
        self._stop_event.set()
        self.watcher.stop()
        if self.engine is not None:
            try:
                if self.engine.status().state is EngineState.RUNNING:
                    self.engine.stop(reason)
                elif self.engine.status().state is EngineState.FAILED:
                    self.engine.force_stop()
            except IllegalStateError:
                logger.info("capture engine already stopped")
            except Exception:  # noqa: BLE001 - shutdown continues
                logger.exception("failed to stop capture engine cleanly")
        if self.publisher is not None:
            self.publisher.close(timeout=self.settings.publish_timeout_seconds)

    def health(self) -> HealthReport:
        assert self.engine is not None
        configuration = self.engine.configuration or self.watcher.current
        partitions = (
            [source_partition_for(configuration.database)] if configuration else None
        )
        return check_health(self.engine, self.offset_store, partitions)

    def _handle_event(self, event: ChangeEvent) -> None:
        assert self.processor is not None and self.engine is not None
        table_config = self._tables.get(event.table)
        if table_config is None:
            logger.debug("ignoring change for unmonitored table %s", event.table)
            return
        if table_config.column_filter:
            event = event.replace_rows(
                table_config.filter_columns(event.before.fields)
                if event.before is not None
                else None,
                table_config.filter_columns(event.after.fields)
                if event.after is not None
                else None,
            )
        configuration = self.engine.configuration
        assert configuration is not None
        self.processor.process(event, configuration.database.type)

    def _on_configuration_change(self, change: ConfigurationChange) -> None:
        if change.previous.kafka != change.current.kafka:
            logger.warning("kafka settings changed; restart the relay to apply them")
        if not change.tables_changed:
            return
        assert self.engine is not None and self.source is not None
        with self._restart_lock:
            state = self.engine.status().state
            if state is not EngineState.RUNNING:
                logger.warning(
                    "monitored tables changed while capture engine is %s; "
                    "the new tables apply on the next operator restart",
                    state.value,
                )
                return
            logger.info(
                "restarting capture: added=%s removed=%s",
                sorted(str(table) for table in change.added_tables),
                sorted(str(table) for table in change.removed_tables),
            )
            self.source.set_decoder(self._decoder_for(change.current))
            self._index_tables(change.current)
            self.engine.restart(change.current, StopReason.CONFIGURATION_CHANGE)

    def _index_tables(self, configuration: ConfigurationAggregate) -> None:
        self._tables = {config.table: config for config in configuration.tables}

    @staticmethod
    def _decoder_for(configuration: ConfigurationAggregate) -> DebeziumEnvelopeDecoder:
        return DebeziumEnvelopeDecoder(
            source_partition_for(configuration.database),
            default_database=configuration.database.database,
        )

    def _kafka_stream(self, configuration: ConfigurationAggregate) -> StreamFactory:
        if not self.settings.source_topics:
            raise ConfigurationError(
                "CDC_SOURCE_TOPICS must list at least one debezium topic"
            )
        return kafka_envelope_stream(
            ",".join(configuration.kafka.brokers),
            self.settings.source_topics,
            self.settings.source_group_id,
            poll_timeout=self.settings.source_poll_seconds,
        )

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _shutdown(signum, _frame) -> None:
            logger.info("received signal %s; shutting down", signal.Signals(signum).name)
            self._stop_event.set()

        signal.signal(signal.SIGINT, _shutdown)
        signal.signal(signal.SIGTERM, _shutdown)

    @staticmethod
    def _log_notification(notification: object) -> None:
        table = getattr(notification, "table", None)
        if table is not None:
            logger.info("%s for table %s", type(notification).__name__, table)
        else:
            logger.info("%s", type(notification).__name__)


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    runtime = RelayRuntime(settings)
    runtime.run()


if __name__ == "__main__":  # pragma: no cover
    main()
