"""Runtime configuration helpers for the CDC relay service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Immutable container for process-level settings.

    The monitored tables and bus connection live in the YAML document at
    ``config_path``; these values only govern how the relay runs.
    """

    config_path: Path
    config_reload_seconds: float
    offset_backend: str
    offset_path: Path
    offset_fsync: bool
    drain_timeout_seconds: float
    publish_attempts: int
    publish_retry_delay_seconds: float
    publish_timeout_seconds: float
    publish_workers: int
    source_topics: Tuple[str, ...] = ()
    source_group_id: str = "cdc-relay"
    source_poll_seconds: float = 1.0
    metrics_port: int = 0
    log_level: str = "INFO"


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_offset_backend(value: Optional[str]) -> str:
    if value is None:
        return "file"
    normalized = value.strip().lower()
    if normalized in {"memory", "file"}:
        return normalized
    return "file"


def _coerce_log_level(value: Optional[str]) -> str:
    if value is None:
        return "INFO"
    normalized = value.strip().upper()
    if normalized in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return normalized
    return "INFO"


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    config_path = Path(os.getenv("CDC_CONFIG_PATH", "config/cdc-config.yml"))
    config_reload_seconds = float(os.getenv("CDC_CONFIG_RELOAD_SECONDS", "30"))
    offset_backend = _coerce_offset_backend(os.getenv("CDC_OFFSET_BACKEND"))
    offset_path = Path(
        os.getenv("CDC_OFFSET_PATH", "data/offsets/cdc-offsets.json")
    )
    offset_fsync = _as_bool(os.getenv("CDC_OFFSET_FSYNC"), False)
    drain_timeout_seconds = float(os.getenv("CDC_DRAIN_TIMEOUT_SECONDS", "30"))
    publish_attempts = int(os.getenv("CDC_PUBLISH_ATTEMPTS", "3"))
    publish_retry_delay_seconds = float(
        os.getenv("CDC_PUBLISH_RETRY_DELAY_SECONDS", "1.0")
    )
    publish_timeout_seconds = float(os.getenv("CDC_PUBLISH_TIMEOUT_SECONDS", "30"))
    publish_workers = int(os.getenv("CDC_PUBLISH_WORKERS", "4"))
    source_topics = _split_csv(os.getenv("CDC_SOURCE_TOPICS"))
    source_group_id = os.getenv("CDC_SOURCE_GROUP_ID", "cdc-relay").strip()
    source_poll_seconds = float(os.getenv("CDC_SOURCE_POLL_SECONDS", "1.0"))
    metrics_port = int(os.getenv("CDC_METRICS_PORT", "0"))
    log_level = _coerce_log_level(os.getenv("LOG_LEVEL"))

    return Settings(
        config_path=config_path,
        config_reload_seconds=max(config_reload_seconds, 1.0),
        offset_backend=offset_backend,
        offset_path=offset_path,
        offset_fsync=offset_fsync,
        drain_timeout_seconds=drain_timeout_seconds,
        publish_attempts=max(publish_attempts, 1),
        publish_retry_delay_seconds=publish_retry_delay_seconds,
        publish_timeout_seconds=publish_timeout_seconds,
        publish_workers=max(publish_workers, 1),
        source_topics=source_topics,
        source_group_id=source_group_id or "cdc-relay",
        source_poll_seconds=source_poll_seconds,
        metrics_port=metrics_port,
        log_level=log_level,
    )
