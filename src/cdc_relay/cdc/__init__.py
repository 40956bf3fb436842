"""Capture-to-delivery pipeline: checkpoints, normalisation, publishing and the engine."""

from .checkpoint import (
    FileOffsetStore,
    InMemoryOffsetStore,
    OffsetStore,
    OffsetStoreError,
    build_offset_store,
)
from .engine import (
    CaptureEngine,
    EngineError,
    EngineState,
    EngineStatus,
    IllegalStateError,
    StopReason,
    StopResult,
    source_partition_for,
)
from .metrics import PipelineMetrics
from .normalizer import DataNormalizer, NormalizationError
from .payload import encode_event, event_to_payload
from .pipeline import BatchResult, EventProcessor, ProcessingError
from .publisher import KafkaEventPublisher, PublishError, build_producer
from .source import (
    CaptureSource,
    DebeziumEnvelopeDecoder,
    StreamCaptureSource,
    kafka_envelope_stream,
)
from .topics import InvalidTopicNameError, TopicNameResolver, validate_topic_name

__all__ = [
    "BatchResult",
    "CaptureEngine",
    "CaptureSource",
    "DataNormalizer",
    "DebeziumEnvelopeDecoder",
    "EngineError",
    "EngineState",
    "EngineStatus",
    "EventProcessor",
    "FileOffsetStore",
    "IllegalStateError",
    "InMemoryOffsetStore",
    "InvalidTopicNameError",
    "KafkaEventPublisher",
    "NormalizationError",
    "OffsetStore",
    "OffsetStoreError",
    "PipelineMetrics",
    "ProcessingError",
    "PublishError",
    "StopReason",
    "StopResult",
    "StreamCaptureSource",
    "TopicNameResolver",
    "build_offset_store",
    "build_producer",
    "encode_event",
    "event_to_payload",
    "kafka_envelope_stream",
    "source_partition_for",
    "validate_topic_name",
]
