"""Offset store implementations for CDC checkpoints."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, List, Optional, Protocol

from ..config import Settings
from ..model import CdcPosition

logger = logging.getLogger(__name__)


class OffsetStoreError(RuntimeError):
    """Raised when a checkpoint cannot be read from or written to storage."""


class OffsetStore(Protocol):
    """Persistence backend keyed by source partition."""

    def save(self, position: CdcPosition) -> None: ...

    def load(self, source_partition: str) -> Optional[CdcPosition]: ...

    def delete(self, source_partition: str) -> None: ...

    def partitions(self) -> List[str]: ...


def _is_regression(current: Optional[CdcPosition], position: CdcPosition) -> bool:
    return current is not None and position.is_before(current)


class InMemoryOffsetStore:
    """Volatile offset store keeping positions in-memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._positions: Dict[str, CdcPosition] = {}

    def save(self, position: CdcPosition) -> None:
        with self._lock:
            current = self._positions.get(position.source_partition)
            if _is_regression(current, position):
                logger.warning(
                    "ignoring out-of-order checkpoint for partition %s",
                    position.source_partition,
                )
                return
            self._positions[position.source_partition] = position

    def load(self, source_partition: str) -> Optional[CdcPosition]:
        with self._lock:
            return self._positions.get(source_partition)

    def delete(self, source_partition: str) -> None:
        with self._lock:
            self._positions.pop(source_partition, None)

    def partitions(self) -> List[str]:
        with self._lock:
            return sorted(self._positions)


class FileOffsetStore:
    """Durable offset store that rewrites a JSON document atomically.

    The file maps each source partition to its last offset map. Writes go to a
    sibling temp file which then replaces the target, so readers never see a
    partially written document.
    """

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        self._offsets: Dict[str, Dict[str, object]] = {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create offset directory %s: %s",
                self._path.parent,
                exc,
            )
        self._load_from_disk()
        logger.info("file offset store initialised at %s", self._path)

    @property
    def path(self) -> Path:
        return self._path

    def save(self, position: CdcPosition) -> None:
        partition = position.source_partition
        with self._lock:
            current = self._position_locked(partition)
            if _is_regression(current, position):
                logger.warning(
                    "ignoring out-of-order checkpoint for partition %s", partition
                )
                return
            previous = self._offsets.get(partition)
            self._offsets[partition] = dict(position.offset)
            try:
                self._write_locked()
            except OSError as exc:
                if previous is None:
                    self._offsets.pop(partition, None)
                else:
                    self._offsets[partition] = previous
                raise OffsetStoreError(
                    f"failed to save offset for partition {partition}"
                ) from exc
        logger.debug("saved offset for partition %s", partition)

    def load(self, source_partition: str) -> Optional[CdcPosition]:
        if not source_partition or not source_partition.strip():
            return None
        with self._lock:
            return self._position_locked(source_partition)

    def delete(self, source_partition: str) -> None:
        with self._lock:
            previous = self._offsets.pop(source_partition, None)
            if previous is None:
                return
            try:
                self._write_locked()
            except OSError as exc:
                self._offsets[source_partition] = previous
                raise OffsetStoreError(
                    f"failed to delete offset for partition {source_partition}"
                ) from exc
        logger.info("deleted offset for partition %s", source_partition)

    def partitions(self) -> List[str]:
        with self._lock:
            return sorted(self._offsets)

    def _position_locked(self, partition: str) -> Optional[CdcPosition]:
        offset = self._offsets.get(partition)
        if not offset:
            return None
        return CdcPosition(partition, offset)

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "failed to load offset file %s: %s", self._path, exc, exc_info=False
            )
            return
        if not isinstance(data, dict):
            logger.warning("offset file %s has invalid format; ignoring", self._path)
            return
        filtered: Dict[str, Dict[str, object]] = {}
        for key, value in data.items():
            if isinstance(key, str) and key.strip() and isinstance(value, dict) and value:
                filtered[key] = value
        with self._lock:
            self._offsets = filtered

    def _write_locked(self) -> None:
        temp_fd: Optional[int] = None
        temp_path: Optional[str] = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as tmp:
                temp_fd = None  # ownership transferred to file object
                json.dump(self._offsets, tmp, sort_keys=True, indent=2)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(temp_path, self._path)
            temp_path = None
            if self._fsync:
                try:
                    dir_fd = os.open(self._path.parent, os.O_RDONLY)
                except OSError:  # pragma: no cover - platform dependent
                    dir_fd = None
                if dir_fd is not None:
                    try:
                        os.fsync(dir_fd)
                    finally:
                        os.close(dir_fd)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("failed to persist offset file %s: %s", self._path, exc)
            if not isinstance(exc, OSError):
                raise OSError(str(exc)) from exc
            raise
        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass


def build_offset_store(settings: Settings) -> OffsetStore:
    if settings.offset_backend == "memory":
        return InMemoryOffsetStore()
    return FileOffsetStore(settings.offset_path, fsync=settings.offset_fsync)


__all__ = [
    "FileOffsetStore",
    "InMemoryOffsetStore",
    "OffsetStore",
    "OffsetStoreError",
    "build_offset_store",
]
