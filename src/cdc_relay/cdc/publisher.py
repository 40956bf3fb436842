"""Kafka publisher with bounded retry and per-key ordered async sends."""

from __future__ import annotations

import logging
import time
import zlib
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from confluent_kafka import KafkaException, Producer

from ..model import ChangeEvent
from .payload import encode_event
from .topics import InvalidTopicNameError, TopicNameResolver

if TYPE_CHECKING:  # pragma: no cover
    from ..configuration import KafkaConfig
    from .metrics import PipelineMetrics

logger = logging.getLogger(__name__)

_PRODUCER_DEFAULTS: Dict[str, object] = {
    "client.id": "cdc-relay",
    "acks": "all",
    "enable.idempotence": True,
    "linger.ms": 10,
    "compression.type": "snappy",
    "request.timeout.ms": 30000,
}


class PublishError(RuntimeError):
    """Raised when an event could not be delivered to Kafka."""

    def __init__(
        self,
        message: str,
        *,
        topic: Optional[str] = None,
        last_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.topic = topic
        self.last_error = last_error


class DeliveryTimeout(RuntimeError):
    """Raised when the producer did not confirm delivery within the timeout."""


def build_producer(kafka_config: "KafkaConfig") -> Producer:
    """Create a ``confluent_kafka.Producer`` for the configured cluster."""
    conf: Dict[str, object] = dict(_PRODUCER_DEFAULTS)
    conf["bootstrap.servers"] = ",".join(kafka_config.brokers)
    security = kafka_config.security
    if security is not None:
        conf["security.protocol"] = security.protocol
        if security.mechanism:
            conf["sasl.mechanism"] = security.mechanism
        if security.username:
            conf["sasl.username"] = security.username
        if security.password:
            conf["sasl.password"] = security.password
        if security.truststore_path:
            conf["ssl.ca.location"] = str(security.truststore_path)
    conf.update(kafka_config.producer_properties)
    logger.info(
        "creating kafka producer for brokers %s", conf["bootstrap.servers"]
    )
    return Producer(conf)


class KafkaEventPublisher:
    """Publishes change events keyed by their table's fully qualified name.

    ``publish`` blocks through up to ``max_attempts`` send attempts, sleeping
    ``retry_delay_seconds`` between them. ``publish_async`` hands the same
    work to a single-threaded lane picked from the key, so events for one
    table are sent in submission order while different tables proceed in
    parallel.
    """

    def __init__(
        self,
        producer: Producer,
        resolver: TopicNameResolver,
        *,
        max_attempts: int = 3,
        retry_delay_seconds: float = 1.0,
        send_timeout_seconds: float = 30.0,
        async_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
        metrics: Optional["PipelineMetrics"] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")
        if async_workers < 1:
            raise ValueError("async_workers must be >= 1")
        self._producer = producer
        self._resolver = resolver
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay_seconds
        self._send_timeout = send_timeout_seconds
        self._sleep = sleep
        self._metrics = metrics
        self._lanes: List[ThreadPoolExecutor] = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"cdc-publish-{index}")
            for index in range(async_workers)
        ]
        self._closed = False
        self._close_lock = Lock()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def publish(self, event: ChangeEvent) -> None:
        try:
            topic = self._resolver.resolve(event.table)
        except InvalidTopicNameError as exc:
            raise PublishError(
                f"invalid topic for table {event.table}: {exc}", last_error=exc
            ) from exc
        key = event.table.fully_qualified_name
        value = encode_event(event)

        last_error: Optional[BaseException] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._send_once(topic, key, value)
            except Exception as exc:  # noqa: BLE001 - retried below
                last_error = exc
                if attempt >= self._max_attempts:
                    break
                logger.warning(
                    "publish attempt %d/%d to %s failed: %s; retrying in %.1fs",
                    attempt,
                    self._max_attempts,
                    topic,
                    exc,
                    self._retry_delay,
                )
                if self._metrics is not None:
                    self._metrics.inc_publish_retries()
                self._sleep(self._retry_delay)
                continue
            logger.debug(
                "published %s event for %s to %s (attempt %d)",
                event.operation.value,
                key,
                topic,
                attempt,
            )
            return

        logger.error(
            "failed to publish event for %s to %s after %d attempts",
            key,
            topic,
            self._max_attempts,
        )
        raise PublishError(
            f"failed to publish event to topic {topic} after "
            f"{self._max_attempts} attempts",
            topic=topic,
            last_error=last_error,
        ) from last_error

    def publish_async(self, event: ChangeEvent) -> "Future[None]":
        if self._closed:
            raise RuntimeError("publisher is closed")
        lane = self._lane_for(event.table.fully_qualified_name)
        return lane.submit(self.publish, event)

    def close(self, timeout: float = 10.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        for lane in self._lanes:
            lane.shutdown(wait=True)
        remaining = self._producer.flush(timeout)
        if remaining:
            logger.warning(
                "%d message(s) still queued after closing the publisher", remaining
            )

    def _lane_for(self, key: str) -> ThreadPoolExecutor:
        index = zlib.crc32(key.encode("utf-8")) % len(self._lanes)
        return self._lanes[index]

    def _send_once(self, topic: str, key: str, value: bytes) -> None:
        outcome: Dict[str, object] = {}

        def _on_delivery(err, _msg) -> None:
            outcome["error"] = err

        self._producer.produce(
            topic=topic,
            key=key.encode("utf-8"),
            value=value,
            callback=_on_delivery,
        )
        self._producer.flush(self._send_timeout)
        if "error" not in outcome:
            raise DeliveryTimeout(
                f"message to {topic} not acknowledged within {self._send_timeout}s"
            )
        if outcome["error"] is not None:
            raise KafkaException(outcome["error"])


__all__ = [
    "DeliveryTimeout",
    "KafkaEventPublisher",
    "PublishError",
    "build_producer",
]
