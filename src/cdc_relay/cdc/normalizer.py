"""Normalisation of source-native column values into broker-safe values.

Rules applied per field, first match wins:

* temporal values (and temporal-looking strings, or epoch values in
  temporal-named columns) become ISO-8601 UTC strings with a ``Z`` suffix;
* numbers stay numbers unless JSON consumers would lose precision, in which
  case they are rendered as plain strings;
* text and binary values are coerced to valid UTF-8 strings;
* nested lists and mappings are normalised recursively.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Mapping, Optional

from ..model import DatabaseType, RowData, RowValue

logger = logging.getLogger(__name__)

MAX_SAFE_INTEGER = 9007199254740991
MIN_SAFE_INTEGER = -9007199254740991

_EPOCH_DIGITS = re.compile(r"^-?\d{10,13}$")
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NAME_SEPARATORS = re.compile(r"[^a-z0-9]+")
_TEMPORAL_TOKENS = {"time", "timestamp", "date", "datetime", "ts"}
_TEMPORAL_SUFFIXES = {"at", "on"}
_TEMPORAL_NAMES = {"created", "updated", "modified"}


class NormalizationError(RuntimeError):
    """Raised when a row cannot be converted into its canonical form."""


_MISSING = object()


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def _name_tokens(name: str) -> List[str]:
    split = _CAMEL_BOUNDARY.sub(r"\1_\2", name).lower()
    return [token for token in _NAME_SEPARATORS.split(split) if token]


def is_temporal_field(name: Optional[str]) -> bool:
    """Match whole name tokens: ``created_at`` and ``eventTime`` qualify,
    ``candidate_id`` and ``lifetime_points`` do not."""
    if not name:
        return False
    tokens = _name_tokens(name)
    if not tokens:
        return False
    return (
        any(token in _TEMPORAL_TOKENS for token in tokens)
        or (len(tokens) > 1 and tokens[-1] in _TEMPORAL_SUFFIXES)
        or "_".join(tokens) in _TEMPORAL_NAMES
    )


def looks_like_timestamp(text: str) -> bool:
    return "T" in text or ("-" in text and ":" in text)


def _from_epoch(value: int) -> datetime:
    if len(str(abs(value))) <= 10:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)


def _parse_timestamp_text(text: str) -> Optional[datetime]:
    candidate = text.strip()
    if candidate.endswith("Z") or candidate.endswith("z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def normalize_timestamp(value: object, field_name: str) -> object:
    """Return an ISO-8601 UTC string, or ``_MISSING`` when not temporal.

    Epoch values, numeric or textual, are converted only for temporal field
    names; elsewhere a run of digits is just a number or an identifier.
    """
    if isinstance(value, datetime):
        return _format_timestamp(value)
    if isinstance(value, date):
        return _format_timestamp(datetime.combine(value, time.min))
    if isinstance(value, bool):
        return _MISSING
    if isinstance(value, int):
        if is_temporal_field(field_name) and _EPOCH_DIGITS.match(str(value)):
            return _format_timestamp(_from_epoch(value))
        return _MISSING
    if isinstance(value, str):
        if _EPOCH_DIGITS.match(value.strip()):
            if is_temporal_field(field_name):
                return _format_timestamp(_from_epoch(int(value.strip())))
            return _MISSING
        if looks_like_timestamp(value):
            parsed = _parse_timestamp_text(value)
            if parsed is None:
                logger.debug("unable to parse timestamp string for field %s", field_name)
                return _MISSING
            return _format_timestamp(parsed)
    return _MISSING


def normalize_number(value: object, field_name: str) -> object:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if MIN_SAFE_INTEGER <= value <= MAX_SAFE_INTEGER:
            return value
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return value
    if isinstance(value, Decimal):
        return _normalize_decimal(value, field_name)
    return _MISSING


def _normalize_decimal(value: Decimal, field_name: str) -> RowValue:
    if not value.is_finite():
        return str(value)
    try:
        if value == value.to_integral_value():
            as_int = int(value)
            if MIN_SAFE_INTEGER <= as_int <= MAX_SAFE_INTEGER:
                return as_int
    except (InvalidOperation, OverflowError):
        pass
    as_float = float(value)
    if math.isfinite(as_float) and Decimal(repr(as_float)) == value:
        return as_float
    logger.debug("rendering decimal field %s as string to keep precision", field_name)
    return format(value, "f")


def normalize_text(value: object) -> object:
    if isinstance(value, str):
        if any(0xD800 <= ord(char) <= 0xDFFF for char in value):
            return value.encode("utf-16", "surrogatepass").decode("utf-16", "replace")
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return _MISSING


class DataNormalizer:
    """Converts raw row mappings into :class:`RowData` of canonical values."""

    def normalize(
        self,
        raw: Optional[Mapping[str, object]],
        database_type: DatabaseType = DatabaseType.POSTGRESQL,
    ) -> RowData:
        if raw is None:
            return RowData({})
        try:
            fields = {
                str(name): self.normalize_value(value, str(name))
                for name, value in raw.items()
            }
        except NormalizationError:
            raise
        except Exception as exc:  # noqa: BLE001 - wrapped with context
            raise NormalizationError(
                f"failed to normalize row data for database type {database_type}"
            ) from exc
        logger.debug(
            "normalized %d fields for database type %s", len(fields), database_type
        )
        return RowData(fields)

    def normalize_value(self, value: object, field_name: str) -> RowValue:
        if value is None:
            return None
        if isinstance(value, Mapping):
            return {
                str(key): self.normalize_value(item, str(key))
                for key, item in value.items()
            }
        if isinstance(value, (list, tuple, set, frozenset)):
            return [self.normalize_value(item, field_name) for item in value]
        for step in (normalize_timestamp, normalize_number):
            result = step(value, field_name)
            if result is not _MISSING:
                return result  # type: ignore[return-value]
        result = normalize_text(value)
        if result is not _MISSING:
            return result  # type: ignore[return-value]
        return str(value)


__all__ = [
    "DataNormalizer",
    "MAX_SAFE_INTEGER",
    "NormalizationError",
    "is_temporal_field",
    "looks_like_timestamp",
]
