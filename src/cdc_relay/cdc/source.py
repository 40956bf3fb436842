"""Boundary to the change-capture collaborator.

The WAL reader itself is external. Its output reaches the relay as Debezium
change envelopes, which :class:`DebeziumEnvelopeDecoder` turns into
:class:`~cdc_relay.model.ChangeEvent` values and :class:`StreamCaptureSource`
feeds to the engine from a background thread.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from typing import (
    Callable,
    Dict,
    Iterable,
    Iterator,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from confluent_kafka import Consumer, KafkaError, KafkaException

from ..model import CdcPosition, ChangeEvent, OperationType, TableIdentifier

logger = logging.getLogger(__name__)

EVENT_SOURCE = "debezium-cdc-app"
EVENT_VERSION = "1.0.0"
SCHEMA_VERSION = 1

_SOURCE_OFFSET_KEYS = (
    "ts_ms",
    "lsn",
    "txId",
    "sequence",
    "change_lsn",
    "commit_lsn",
    "event_serial_no",
    "file",
    "pos",
    "row",
    "scn",
)

EventHandler = Callable[[ChangeEvent], None]
StreamFactory = Callable[
    [Optional[CdcPosition], threading.Event], Iterable[Mapping[str, object]]
]


class CaptureSource(Protocol):
    def start(
        self, handler: EventHandler, resume_position: Optional[CdcPosition]
    ) -> None: ...

    def stop(self, timeout: float) -> None: ...

    def is_running(self) -> bool: ...


class DebeziumEnvelopeDecoder:
    """Decode Debezium change envelopes.

    A record is a mapping with ``value`` (the envelope, as a mapping, JSON
    text or bytes) and optional ``partition``/``offset`` keys. Envelopes with
    a Kafka Connect ``schema``/``payload`` wrapper are unwrapped. Tombstones
    and non-row operations (truncate, logical messages) decode to ``None``.
    """

    def __init__(self, source_partition: str, *, default_database: Optional[str] = None) -> None:
        self._source_partition = source_partition
        self._default_database = default_database

    def decode(self, record: Mapping[str, object]) -> Optional[ChangeEvent]:
        value = record.get("value")
        if value is None:
            return None
        if isinstance(value, (bytes, bytearray)):
            value = bytes(value).decode("utf-8")
        if isinstance(value, str):
            value = json.loads(value)
        if not isinstance(value, Mapping):
            raise ValueError(f"unsupported envelope type: {type(value).__name__}")
        payload = value
        if "op" not in value and isinstance(value.get("payload"), Mapping):
            payload = value["payload"]

        op = payload.get("op")
        try:
            operation = OperationType.from_debezium(str(op))
        except ValueError:
            logger.debug("skipping debezium envelope with op %r", op)
            return None

        source = payload.get("source") or {}
        if not isinstance(source, Mapping):
            source = {}
        table = TableIdentifier(
            database=str(source.get("db") or self._default_database or ""),
            schema=source.get("schema") or None,
            table=str(source.get("table") or ""),
        )

        ts_ms = payload.get("ts_ms") or source.get("ts_ms")
        if isinstance(ts_ms, (int, float)) and not isinstance(ts_ms, bool):
            timestamp = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
        else:
            timestamp = datetime.now(timezone.utc)

        partition = str(record.get("partition") or self._source_partition)
        raw_offset = record.get("offset")
        offset: Dict[str, object] = {}
        if isinstance(raw_offset, Mapping):
            offset = {str(key): item for key, item in raw_offset.items() if item is not None}
        if not offset:
            offset = {
                key: source[key] for key in _SOURCE_OFFSET_KEYS if source.get(key) is not None
            }
            for key in ("topic", "kafka_partition", "kafka_offset"):
                if record.get(key) is not None:
                    offset[key] = record[key]

        return ChangeEvent.create(
            table=table,
            operation=operation,
            timestamp=timestamp,
            position=CdcPosition(partition, offset),
            before=payload.get("before") if operation is not OperationType.INSERT else None,
            after=payload.get("after") if operation is not OperationType.DELETE else None,
            metadata={
                "source": EVENT_SOURCE,
                "version": EVENT_VERSION,
                "connector": source.get("connector") or "unknown",
                "schemaVersion": SCHEMA_VERSION,
            },
        )


class StreamCaptureSource:
    """Runs a record stream on a daemon thread and forwards decoded events.

    Undecodable records are logged and skipped. An exception from the stream
    or the handler ends the loop and is reported once through ``on_error``.
    """

    def __init__(
        self,
        stream_factory: StreamFactory,
        decoder: DebeziumEnvelopeDecoder,
        *,
        on_error: Optional[Callable[[BaseException], None]] = None,
        name: str = "cdc-capture",
    ) -> None:
        self._stream_factory = stream_factory
        self._decoder = decoder
        self._on_error = on_error
        self._name = name
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def set_error_handler(self, on_error: Callable[[BaseException], None]) -> None:
        self._on_error = on_error

    def set_decoder(self, decoder: DebeziumEnvelopeDecoder) -> None:
        self._decoder = decoder

    def start(
        self, handler: EventHandler, resume_position: Optional[CdcPosition]
    ) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise RuntimeError("capture source is already running")
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(handler, resume_position, self._stop_event),
                name=self._name,
                daemon=True,
            )
            self._thread.start()
        logger.info("capture source started")

    def stop(self, timeout: float) -> None:
        with self._lock:
            thread = self._thread
            self._stop_event.set()
        if thread is None or thread is threading.current_thread():
            return
        thread.join(timeout)
        if thread.is_alive():
            logger.warning(
                "capture source did not drain within %.1fs; continuing shutdown", timeout
            )
        else:
            logger.info("capture source stopped")

    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    def _run(
        self,
        handler: EventHandler,
        resume_position: Optional[CdcPosition],
        stop_event: threading.Event,
    ) -> None:
        stream: Optional[Iterable[Mapping[str, object]]] = None
        try:
            stream = self._stream_factory(resume_position, stop_event)
            for record in stream:
                if stop_event.is_set():
                    break
                try:
                    event = self._decoder.decode(record)
                except ValueError as exc:
                    logger.error("skipping undecodable change record: %s", exc)
                    continue
                if event is not None:
                    handler(event)
        except Exception as exc:  # noqa: BLE001 - reported to the engine
            logger.exception("capture stream terminated unexpectedly")
            if self._on_error is not None:
                self._on_error(exc)
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()


def kafka_envelope_stream(
    bootstrap_servers: str,
    topics: Sequence[str],
    group_id: str,
    *,
    poll_timeout: float = 1.0,
    extra_config: Optional[Mapping[str, object]] = None,
) -> StreamFactory:
    """Return a stream factory reading Debezium envelopes from Kafka topics.

    Consumer offsets are committed only after the relay has handled a record,
    which keeps delivery at-least-once across restarts.
    """

    def _factory(
        resume_position: Optional[CdcPosition], stop_event: threading.Event
    ) -> Iterator[Mapping[str, object]]:
        conf: Dict[str, object] = {
            "bootstrap.servers": bootstrap_servers,
            "group.id": group_id,
            "auto.offset.reset": "earliest",
            "enable.auto.commit": False,
        }
        conf.update(extra_config or {})
        consumer = Consumer(conf)
        consumer.subscribe(list(topics))
        if resume_position is not None:
            logger.info(
                "consumer group %s resumes after checkpoint %s",
                group_id,
                dict(resume_position.offset),
            )
        try:
            while not stop_event.is_set():
                msg = consumer.poll(timeout=poll_timeout)
                if msg is None:
                    continue
                if msg.error():
                    if msg.error().code() == KafkaError._PARTITION_EOF:
                        continue
                    raise KafkaException(msg.error())
                yield {
                    "value": msg.value(),
                    "topic": msg.topic(),
                    "kafka_partition": msg.partition(),
                    "kafka_offset": msg.offset(),
                }
                consumer.commit(message=msg, asynchronous=False)
        finally:
            consumer.close()

    return _factory


__all__ = [
    "CaptureSource",
    "DebeziumEnvelopeDecoder",
    "EVENT_SOURCE",
    "StreamCaptureSource",
    "kafka_envelope_stream",
]
