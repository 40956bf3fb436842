"""Topic naming for change events.

Topic names are derived from a pattern containing ``{database}``, ``{schema}``
and ``{table}`` placeholders. Each component is sanitised on its own before
substitution so that a hostile table name cannot inject separators, and the
final name is checked against Kafka's topic naming rules.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from ..model import TableIdentifier

logger = logging.getLogger(__name__)

DEFAULT_TOPIC_PATTERN = "cdc.{database}.{table}"
MAX_TOPIC_LENGTH = 249

_INVALID_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_MULTIPLE_UNDERSCORES = re.compile(r"_{2,}")
_VALID_TOPIC = re.compile(r"^[a-zA-Z0-9._-]+$")


class InvalidTopicNameError(ValueError):
    """Raised when a resolved topic name violates Kafka naming rules."""


def sanitize_component(value: Optional[str], default: str = "unknown") -> str:
    if value is None or not value.strip():
        return default
    cleaned = _INVALID_CHARS.sub("_", value)
    cleaned = cleaned.strip("_")
    cleaned = _MULTIPLE_UNDERSCORES.sub("_", cleaned)
    return cleaned or default


def validate_topic_name(name: Optional[str]) -> str:
    """Return ``name`` unchanged or raise :class:`InvalidTopicNameError`."""
    if name is None or not name.strip():
        raise InvalidTopicNameError("topic name cannot be empty")
    if name in {".", ".."}:
        raise InvalidTopicNameError(f"topic name cannot be {name!r}")
    if len(name) > MAX_TOPIC_LENGTH:
        raise InvalidTopicNameError(
            f"topic name exceeds {MAX_TOPIC_LENGTH} characters: {len(name)}"
        )
    if not _VALID_TOPIC.match(name):
        raise InvalidTopicNameError(
            f"topic name contains invalid characters: {name!r}"
        )
    return name


class TopicNameResolver:
    def __init__(self, pattern: Optional[str] = None) -> None:
        if pattern is None or not pattern.strip():
            pattern = DEFAULT_TOPIC_PATTERN
        self._pattern = pattern

    @property
    def pattern(self) -> str:
        return self._pattern

    def resolve(
        self, table: TableIdentifier, pattern: Optional[str] = None
    ) -> str:
        template = pattern if pattern and pattern.strip() else self._pattern
        topic = (
            template.replace("{database}", sanitize_component(table.database))
            .replace("{schema}", sanitize_component(table.schema, "public"))
            .replace("{table}", sanitize_component(table.table))
        )
        validate_topic_name(topic)
        logger.debug("resolved topic %s for table %s", topic, table)
        return topic


__all__ = [
    "DEFAULT_TOPIC_PATTERN",
    "InvalidTopicNameError",
    "MAX_TOPIC_LENGTH",
    "TopicNameResolver",
    "sanitize_component",
    "validate_topic_name",
]
