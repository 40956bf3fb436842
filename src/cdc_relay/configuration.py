"""Monitored-table configuration: the YAML document, its model and validation.

Process-level knobs live in :mod:`cdc_relay.config`; this module covers the
document that names the source database, the tables to capture and the Kafka
cluster to publish to. A document looks like::

    database:
      type: postgresql
      host: db.internal
      port: 5432
      database: inventory
      username: cdc
      password: ${CDC_DB_PASSWORD}
    tables:
      - name: public.customers
      - name: public.orders
        compositeKey:
          columnNames: [order_id, line_no]
    kafka:
      brokers: [kafka-1:9092]
      topicPattern: cdc.{database}.{table}
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

import yaml

from .model import DatabaseType, TableIdentifier

logger = logging.getLogger(__name__)

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_LOCAL_HOSTS = {"localhost", "127.0.0.1"}
_SECURITY_PROTOCOLS = {"PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL"}
_SASL_MECHANISMS = {"PLAIN", "SCRAM-SHA-256", "SCRAM-SHA-512"}


class ConfigurationError(ValueError):
    """Raised when the configuration document is missing, unreadable or invalid."""


class IncludeMode(str, Enum):
    INCLUDE_ALL = "INCLUDE_ALL"
    EXCLUDE_SPECIFIED = "EXCLUDE_SPECIFIED"


class SslMode(str, Enum):
    DISABLE = "DISABLE"
    REQUIRE = "REQUIRE"
    VERIFY_CA = "VERIFY_CA"
    VERIFY_FULL = "VERIFY_FULL"


@dataclass(frozen=True)
class SslConfig:
    enabled: bool = False
    mode: Optional[SslMode] = None
    ca_cert_path: Optional[str] = None
    client_cert_path: Optional[str] = None
    client_key_path: Optional[str] = None


@dataclass(frozen=True)
class SourceDatabaseConfig:
    type: DatabaseType
    host: str
    port: int
    database: str
    username: str
    password: str = field(default="", repr=False)
    ssl: Optional[SslConfig] = None
    additional_properties: Dict[str, str] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        if not self.host or not self.host.strip():
            raise ConfigurationError("database host is required")
        if not self.database or not self.database.strip():
            raise ConfigurationError("database name is required")
        if not isinstance(self.port, int) or not 1 <= self.port <= 65535:
            raise ConfigurationError(
                f"database port must be between 1 and 65535, got: {self.port}"
            )


@dataclass(frozen=True)
class KafkaSecurity:
    protocol: str = "PLAINTEXT"
    mechanism: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    truststore_path: Optional[str] = None
    truststore_password: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class KafkaConfig:
    brokers: Tuple[str, ...]
    topic_pattern: str
    security: Optional[KafkaSecurity] = None
    producer_properties: Dict[str, object] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "brokers", tuple(self.brokers or ()))
        if not self.brokers:
            raise ConfigurationError("kafka broker list cannot be empty")
        pattern = self.topic_pattern or ""
        if "{database}" not in pattern or "{table}" not in pattern:
            raise ConfigurationError(
                "topic pattern must contain {database} and {table} placeholders: "
                f"{pattern!r}"
            )


@dataclass(frozen=True)
class CompositeKey:
    """Ordered column list used when a table has no natural primary key."""

    columns: Tuple[str, ...]

    def __post_init__(self) -> None:
        columns = tuple(self.columns or ())
        if not columns:
            raise ConfigurationError("composite key must have at least one column")
        if any(not column or not str(column).strip() for column in columns):
            raise ConfigurationError("composite key columns cannot be blank")
        if len(set(columns)) != len(columns):
            raise ConfigurationError(
                f"composite key columns must be unique: {list(columns)}"
            )
        object.__setattr__(self, "columns", columns)


@dataclass(frozen=True)
class TableConfig:
    table: TableIdentifier
    include_mode: IncludeMode = IncludeMode.INCLUDE_ALL
    column_filter: FrozenSet[str] = frozenset()
    composite_key: Optional[CompositeKey] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "column_filter", frozenset(self.column_filter or ()))

    def filter_columns(self, row: Mapping[str, object]) -> Dict[str, object]:
        """Apply the column filter; an empty filter keeps every column.

        With ``INCLUDE_ALL`` a non-empty filter lists the columns to keep,
        with ``EXCLUDE_SPECIFIED`` it lists the columns to drop.
        """
        if not self.column_filter:
            return dict(row)
        if self.include_mode is IncludeMode.EXCLUDE_SPECIFIED:
            return {key: value for key, value in row.items() if key not in self.column_filter}
        return {key: value for key, value in row.items() if key in self.column_filter}


@dataclass(frozen=True, eq=False)
class ConfigurationAggregate:
    database: SourceDatabaseConfig
    tables: Tuple[TableConfig, ...]
    kafka: KafkaConfig
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.database is None:
            raise ConfigurationError("database configuration is required")
        if self.kafka is None:
            raise ConfigurationError("kafka configuration is required")
        tables = tuple(self.tables or ())
        if not tables:
            raise ConfigurationError("at least one table must be configured")
        object.__setattr__(self, "tables", tables)

    def validate(self) -> None:
        seen = set()
        duplicates = []
        for config in self.tables:
            if config.table in seen:
                duplicates.append(config.table.fully_qualified_name)
            seen.add(config.table)
        if duplicates:
            raise ConfigurationError(
                f"duplicate table identifiers found in configuration: {sorted(duplicates)}"
            )

    @property
    def table_identifiers(self) -> FrozenSet[TableIdentifier]:
        return frozenset(config.table for config in self.tables)

    def has_changed_since(self, other: Optional["ConfigurationAggregate"]) -> bool:
        if other is None:
            return True
        return (
            self.database != other.database
            or frozenset(self.tables) != frozenset(other.tables)
            or self.kafka != other.kafka
        )

    def added_tables(
        self, previous: Optional["ConfigurationAggregate"]
    ) -> FrozenSet[TableIdentifier]:
        if previous is None:
            return self.table_identifiers
        return self.table_identifiers - previous.table_identifiers

    def removed_tables(
        self, previous: Optional["ConfigurationAggregate"]
    ) -> FrozenSet[TableIdentifier]:
        if previous is None:
            return frozenset()
        return previous.table_identifiers - self.table_identifiers


def resolve_env(value: object) -> object:
    """Substitute ``${NAME}`` references in strings from the environment."""
    if not isinstance(value, str):
        return value

    def _lookup(match: "re.Match[str]") -> str:
        name = match.group(1)
        resolved = os.getenv(name)
        if resolved is None:
            logger.warning("environment variable %s not found, using empty string", name)
            return ""
        return resolved

    return _ENV_REFERENCE.sub(_lookup, value)


def _section(document: Mapping[str, object], name: str) -> Mapping[str, object]:
    section = document.get(name)
    if not isinstance(section, Mapping):
        raise ConfigurationError(f"missing '{name}' section in configuration")
    return section


def _optional_str(raw: Mapping[str, object], key: str) -> Optional[str]:
    value = resolve_env(raw.get(key))
    if value is None:
        return None
    return str(value)


def _required_str(raw: Mapping[str, object], key: str, label: str) -> str:
    value = _optional_str(raw, key)
    if value is None or not value.strip():
        raise ConfigurationError(f"{label} is required")
    return value.strip()


def _parse_enum(enum_cls, value: object, label: str):
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError as exc:
        raise ConfigurationError(f"invalid {label}: {value!r}") from exc


class ConfigurationLoader:
    """Reads the monitored-table document from a YAML file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def last_modified(self) -> datetime:
        try:
            mtime = self._path.stat().st_mtime
        except OSError as exc:
            raise ConfigurationError(
                f"configuration file not found: {self._path}"
            ) from exc
        return datetime.fromtimestamp(mtime, tz=timezone.utc)

    def load(self) -> ConfigurationAggregate:
        logger.info("loading configuration from %s", self._path)
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(
                f"configuration file not found: {self._path}"
            ) from exc
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigurationError(
                f"failed to parse configuration file {self._path}: {exc}"
            ) from exc
        if not isinstance(document, Mapping):
            raise ConfigurationError(
                f"configuration file {self._path} must contain a mapping"
            )
        try:
            return self.from_mapping(document)
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"failed to load configuration: {exc}") from exc

    @classmethod
    def from_mapping(cls, document: Mapping[str, object]) -> ConfigurationAggregate:
        database = cls._parse_database(_section(document, "database"))
        raw_tables = document.get("tables")
        if not isinstance(raw_tables, list) or not raw_tables:
            raise ConfigurationError("missing 'tables' section in configuration")
        tables = tuple(
            cls._parse_table(entry, database) for entry in raw_tables
        )
        kafka = cls._parse_kafka(_section(document, "kafka"))
        aggregate = ConfigurationAggregate(database=database, tables=tables, kafka=kafka)
        aggregate.validate()
        logger.info(
            "configuration parsed with %d table(s) for database %s",
            len(tables),
            database.database,
        )
        return aggregate

    @staticmethod
    def _parse_database(raw: Mapping[str, object]) -> SourceDatabaseConfig:
        if raw.get("type") is None:
            raise ConfigurationError("database type is required")
        db_type = _parse_enum(DatabaseType, raw["type"], "database type")
        port = resolve_env(raw.get("port"))
        if port is None:
            raise ConfigurationError("database port is required")
        try:
            port = int(port)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid database port: {port!r}") from exc

        ssl = None
        raw_ssl = raw.get("ssl")
        if isinstance(raw_ssl, Mapping):
            if raw_ssl.get("enabled"):
                mode = raw_ssl.get("mode")
                ssl = SslConfig(
                    enabled=True,
                    mode=_parse_enum(SslMode, mode, "ssl mode") if mode else SslMode.REQUIRE,
                    ca_cert_path=_optional_str(raw_ssl, "caCertPath"),
                    client_cert_path=_optional_str(raw_ssl, "clientCertPath"),
                    client_key_path=_optional_str(raw_ssl, "clientKeyPath"),
                )
            else:
                ssl = SslConfig(enabled=False)

        extras: Dict[str, str] = {}
        raw_extras = raw.get("additionalProperties")
        if isinstance(raw_extras, Mapping):
            extras = {str(key): str(resolve_env(value)) for key, value in raw_extras.items()}

        return SourceDatabaseConfig(
            type=db_type,
            host=_required_str(raw, "host", "database host"),
            port=port,
            database=_required_str(raw, "database", "database name"),
            username=(_optional_str(raw, "username") or "").strip(),
            password=_optional_str(raw, "password") or "",
            ssl=ssl,
            additional_properties=extras,
        )

    @staticmethod
    def _parse_table(raw: object, database: SourceDatabaseConfig) -> TableConfig:
        if isinstance(raw, str):
            raw = {"name": raw}
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"invalid table entry: {raw!r}")
        name = _required_str(raw, "name", "table name")
        try:
            table = TableIdentifier.parse(name, database.database, database.type)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        include_mode = IncludeMode.INCLUDE_ALL
        if raw.get("includeMode"):
            include_mode = _parse_enum(IncludeMode, raw["includeMode"], "include mode")

        column_filter = raw.get("columnFilter") or []
        if not isinstance(column_filter, list):
            raise ConfigurationError(f"columnFilter for {name} must be a list")

        composite_key = None
        raw_key = raw.get("compositeKey")
        if isinstance(raw_key, Mapping):
            columns = raw_key.get("columnNames") or []
            if columns:
                composite_key = CompositeKey(tuple(str(column) for column in columns))

        return TableConfig(
            table=table,
            include_mode=include_mode,
            column_filter=frozenset(str(column) for column in column_filter),
            composite_key=composite_key,
        )

    @staticmethod
    def _parse_kafka(raw: Mapping[str, object]) -> KafkaConfig:
        brokers = raw.get("brokers")
        if isinstance(brokers, str):
            brokers = [entry for entry in brokers.split(",")]
        if not isinstance(brokers, list) or not brokers:
            raise ConfigurationError("kafka brokers list is required")
        topic_pattern = _required_str(raw, "topicPattern", "kafka topic pattern")

        security = None
        raw_security = raw.get("security")
        if isinstance(raw_security, Mapping):
            protocol = (_optional_str(raw_security, "protocol") or "PLAINTEXT").upper()
            if protocol not in _SECURITY_PROTOCOLS:
                raise ConfigurationError(f"invalid kafka security protocol: {protocol!r}")
            mechanism = _optional_str(raw_security, "mechanism")
            if mechanism:
                mechanism = mechanism.upper().replace("_", "-")
                if mechanism not in _SASL_MECHANISMS:
                    raise ConfigurationError(f"invalid sasl mechanism: {mechanism!r}")
            truststore = raw_security.get("truststore")
            truststore_path = None
            truststore_password = None
            if isinstance(truststore, Mapping):
                truststore_path = _optional_str(truststore, "path")
                truststore_password = _optional_str(truststore, "password")
            security = KafkaSecurity(
                protocol=protocol,
                mechanism=mechanism or None,
                username=_optional_str(raw_security, "username"),
                password=_optional_str(raw_security, "password"),
                truststore_path=truststore_path,
                truststore_password=truststore_password,
            )

        producer_properties: Dict[str, object] = {}
        raw_props = raw.get("producerProperties")
        if isinstance(raw_props, Mapping):
            producer_properties = {
                str(key): resolve_env(value) for key, value in raw_props.items()
            }

        return KafkaConfig(
            brokers=tuple(str(resolve_env(broker)).strip() for broker in brokers),
            topic_pattern=topic_pattern,
            security=security,
            producer_properties=producer_properties,
        )


@dataclass(frozen=True)
class ValidationResult:
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        lines = [f"Validation {'PASSED' if self.is_valid else 'FAILED'}"]
        if self.errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"  - {error}" for error in self.errors)
        if self.warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"  - {warning}" for warning in self.warnings)
        return "\n".join(lines) + "\n"


class ConfigurationValidator:
    """Collects every error and warning for a configuration without raising."""

    def validate(self, configuration: ConfigurationAggregate) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        try:
            configuration.validate()
        except ConfigurationError as exc:
            errors.append(f"basic validation failed: {exc}")
            logger.error("configuration validation failed: %s", exc)

        self._check_database(configuration.database, errors, warnings)
        self._check_kafka(configuration.kafka, errors, warnings)

        result = ValidationResult(tuple(errors), tuple(warnings))
        if result.is_valid:
            logger.info(
                "configuration validation passed with %d warning(s)", len(warnings)
            )
        else:
            logger.error(
                "configuration validation failed with %d error(s)", len(errors)
            )
        return result

    @staticmethod
    def _check_database(
        database: SourceDatabaseConfig, errors: List[str], warnings: List[str]
    ) -> None:
        if database.host.strip().lower() in _LOCAL_HOSTS:
            warnings.append(
                "database host is localhost; ensure this is intentional for your environment"
            )
        if database.ssl is not None and database.ssl.enabled and not database.ssl.ca_cert_path:
            warnings.append("ssl enabled but no CA certificate path specified")
        if not database.username or not database.username.strip():
            errors.append("database username cannot be empty")
        if not database.password or not database.password.strip():
            warnings.append(
                "database password is empty; configure it through an environment variable"
            )

    @staticmethod
    def _check_kafka(kafka: KafkaConfig, errors: List[str], warnings: List[str]) -> None:
        for broker in kafka.brokers:
            if ":" not in broker:
                errors.append(
                    f"invalid kafka broker address format: {broker} (expected host:port)"
                )
            if "localhost" in broker or "127.0.0.1" in broker:
                warnings.append(f"kafka broker address contains localhost: {broker}")


__all__ = [
    "CompositeKey",
    "ConfigurationAggregate",
    "ConfigurationError",
    "ConfigurationLoader",
    "ConfigurationValidator",
    "IncludeMode",
    "KafkaConfig",
    "KafkaSecurity",
    "SourceDatabaseConfig",
    "SslConfig",
    "SslMode",
    "TableConfig",
    "ValidationResult",
    "resolve_env",
]
