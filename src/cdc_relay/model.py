"""Value types describing captured rows, their positions, and change events."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Union

# Normalized column values. Nested containers hold further RowValues.
RowValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]

_TIMESTAMP_KEYS = ("timestamp", "ts_ms")
_SEQUENCE_KEYS = ("sequence", "event")


def _is_blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


@dataclass(frozen=True)
class TableIdentifier:
    """Identifies a monitored table; used as a lookup key throughout."""

    database: str
    schema: Optional[str]
    table: str

    def __post_init__(self) -> None:
        if _is_blank(self.database):
            raise ValueError("database name cannot be blank")
        if _is_blank(self.table):
            raise ValueError("table name cannot be blank")

    @classmethod
    def of(cls, database: str, table: str, schema: Optional[str] = None) -> "TableIdentifier":
        return cls(database=database, schema=schema, table=table)

    @classmethod
    def parse(
        cls, name: str, database: str, database_type: str = "POSTGRESQL"
    ) -> "TableIdentifier":
        """Parse a configured table name relative to ``database``.

        MySQL has no schemas, so ``db.table`` overrides the database there;
        the other engines read ``schema.table`` and default to ``public``.
        """
        parts = [part for part in str(name).strip().split(".")]
        if any(not part for part in parts):
            raise ValueError(f"invalid table name format: {name!r}")
        kind = (
            database_type.value
            if isinstance(database_type, DatabaseType)
            else str(database_type).upper()
        )
        if kind == DatabaseType.MYSQL.value:
            if len(parts) == 1:
                return cls(database, None, parts[0])
            if len(parts) == 2:
                return cls(parts[0], None, parts[1])
        else:
            if len(parts) == 1:
                return cls(database, "public", parts[0])
            if len(parts) == 2:
                return cls(database, parts[0], parts[1])
        raise ValueError(f"invalid table name format: {name!r}")

    @property
    def fully_qualified_name(self) -> str:
        if not _is_blank(self.schema):
            return f"{self.database}.{self.schema}.{self.table}"
        return f"{self.database}.{self.table}"

    def __str__(self) -> str:
        return self.fully_qualified_name


def _numeric(offset: Mapping[str, object], keys) -> Optional[float]:
    for key in keys:
        value = offset.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return value
    return None


@dataclass(frozen=True, eq=False)
class CdcPosition:
    """Partition-scoped checkpoint emitted by the capture collaborator.

    Positions in different partitions order by partition name. Within a
    partition the ``timestamp``/``ts_ms`` field decides, then
    ``sequence``/``event``; when neither side carries a comparable field the
    positions are treated as equal.
    """

    source_partition: str
    offset: Mapping[str, object]

    def __post_init__(self) -> None:
        if _is_blank(self.source_partition):
            raise ValueError("source partition cannot be blank")
        if self.offset is None or len(self.offset) == 0:
            raise ValueError("offset cannot be empty")
        object.__setattr__(self, "offset", MappingProxyType(dict(self.offset)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CdcPosition):
            return NotImplemented
        return (
            self.source_partition == other.source_partition
            and dict(self.offset) == dict(other.offset)
        )

    def __hash__(self) -> int:
        return hash((self.source_partition, tuple(sorted(self.offset, key=str))))

    def compare(self, other: "CdcPosition") -> int:
        if self == other:
            return 0
        if self.source_partition != other.source_partition:
            return -1 if self.source_partition < other.source_partition else 1
        for keys in (_TIMESTAMP_KEYS, _SEQUENCE_KEYS):
            mine = _numeric(self.offset, keys)
            theirs = _numeric(other.offset, keys)
            if mine is not None and theirs is not None:
                return (mine > theirs) - (mine < theirs)
        return 0

    def is_before(self, other: "CdcPosition") -> bool:
        return self.compare(other) < 0

    def is_after(self, other: "CdcPosition") -> bool:
        return self.compare(other) > 0

    def to_dict(self) -> Dict[str, object]:
        return {"sourcePartition": self.source_partition, "offset": dict(self.offset)}


class DatabaseType(str, Enum):
    POSTGRESQL = "POSTGRESQL"
    MYSQL = "MYSQL"
    SQLSERVER = "SQLSERVER"
    ORACLE = "ORACLE"


class OperationType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @classmethod
    def from_debezium(cls, op: str) -> "OperationType":
        if op in ("c", "r"):
            return cls.INSERT
        if op == "u":
            return cls.UPDATE
        if op == "d":
            return cls.DELETE
        raise ValueError(f"unknown operation: {op!r}")


@dataclass(frozen=True, eq=False)
class RowData:
    """Read-only column name to normalized value mapping."""

    fields: Mapping[str, RowValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.fields is None:
            raise ValueError("row fields cannot be None")
        object.__setattr__(self, "fields", MappingProxyType(dict(self.fields)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RowData):
            return NotImplemented
        return dict(self.fields) == dict(other.fields)

    __hash__ = None  # type: ignore[assignment]

    def get_field(self, name: str) -> RowValue:
        return self.fields.get(name)

    def has_field(self, name: str) -> bool:
        return name in self.fields

    def __len__(self) -> int:
        return len(self.fields)

    def __iter__(self) -> Iterator[str]:
        return iter(self.fields)

    def is_empty(self) -> bool:
        return not self.fields

    def to_dict(self) -> Dict[str, RowValue]:
        return dict(self.fields)


def _as_row(value: Union[RowData, Mapping[str, RowValue], None]) -> Optional[RowData]:
    if value is None or isinstance(value, RowData):
        return value
    return RowData(value)


@dataclass(frozen=True)
class ChangeEvent:
    """A single row mutation; operation/before/after agree by construction."""

    table: TableIdentifier
    operation: OperationType
    timestamp: datetime
    position: CdcPosition
    before: Optional[RowData] = None
    after: Optional[RowData] = None
    metadata: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.table is None:
            raise ValueError("table identifier cannot be None")
        if self.position is None:
            raise ValueError("cdc position cannot be None")
        if self.timestamp is None:
            raise ValueError("timestamp cannot be None")
        operation = OperationType(self.operation)
        before = _as_row(self.before)
        after = _as_row(self.after)
        if operation is OperationType.INSERT:
            if before is not None:
                raise ValueError("INSERT operation must have null 'before' data")
            if after is None:
                raise ValueError("INSERT operation must have non-null 'after' data")
        elif operation is OperationType.UPDATE:
            if before is None:
                raise ValueError("UPDATE operation must have non-null 'before' data")
            if after is None:
                raise ValueError("UPDATE operation must have non-null 'after' data")
        else:
            if before is None:
                raise ValueError("DELETE operation must have non-null 'before' data")
            if after is not None:
                raise ValueError("DELETE operation must have null 'after' data")
        timestamp = self.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        object.__setattr__(self, "operation", operation)
        object.__setattr__(self, "before", before)
        object.__setattr__(self, "after", after)
        object.__setattr__(self, "timestamp", timestamp)
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata or {})))

    @classmethod
    def create(
        cls,
        *,
        table: TableIdentifier,
        operation: Union[OperationType, str],
        position: CdcPosition,
        timestamp: Optional[datetime] = None,
        before: Union[RowData, Mapping[str, RowValue], None] = None,
        after: Union[RowData, Mapping[str, RowValue], None] = None,
        metadata: Optional[Mapping[str, object]] = None,
    ) -> "ChangeEvent":
        return cls(
            table=table,
            operation=OperationType(operation),
            timestamp=timestamp or datetime.now(timezone.utc),
            position=position,
            before=_as_row(before),
            after=_as_row(after),
            metadata=dict(metadata or {}),
        )

    def replace_rows(
        self, before: Optional[RowData], after: Optional[RowData]
    ) -> "ChangeEvent":
        return ChangeEvent(
            table=self.table,
            operation=self.operation,
            timestamp=self.timestamp,
            position=self.position,
            before=before,
            after=after,
            metadata=dict(self.metadata),
        )

    @property
    def is_insert(self) -> bool:
        return self.operation is OperationType.INSERT

    @property
    def is_update(self) -> bool:
        return self.operation is OperationType.UPDATE

    @property
    def is_delete(self) -> bool:
        return self.operation is OperationType.DELETE


__all__ = [
    "CdcPosition",
    "ChangeEvent",
    "DatabaseType",
    "OperationType",
    "RowData",
    "RowValue",
    "TableIdentifier",
]
