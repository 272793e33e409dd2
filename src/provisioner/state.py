"""State store interface and local implementations.

The state store is the only shared mutable resource in an apply run. It
is injected into the differ and executor explicitly and opened/closed
around each run, never held as a process-wide singleton.

Implementations must provide read-your-writes consistency within a run
and atomic writes per key. The engine writes each record immediately
after its resource is applied, so a re-run after a partial failure
diffs against accurate partial progress.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml
from pydantic import ValidationError

from .errors import StateStoreError
from .models import ResourceKey, StateRecord

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@runtime_checkable
class StateStore(Protocol):
    """External key-value persistence for StateRecords."""

    def open(self) -> None: ...

    def close(self) -> None: ...

    def get(self, key: ResourceKey) -> StateRecord | None: ...

    def put(self, key: ResourceKey, record: StateRecord) -> None: ...

    def delete(self, key: ResourceKey) -> None: ...

    def keys(self) -> list[ResourceKey]: ...


@contextmanager
def state_session(store: StateStore) -> Iterator[StateStore]:
    """Open the store before a run and close it afterwards."""
    store.open()
    try:
        yield store
    finally:
        store.close()


class InMemoryStateStore:
    """Thread-safe in-memory state store.

    Useful for tests and for callers that persist state themselves.
    """

    def __init__(self, records: dict[ResourceKey, StateRecord] | None = None) -> None:
        self._records: dict[ResourceKey, StateRecord] = dict(records or {})
        self._lock = threading.Lock()
        self.open_count = 0
        self.is_open = False

    def open(self) -> None:
        self.open_count += 1
        self.is_open = True

    def close(self) -> None:
        self.is_open = False

    def get(self, key: ResourceKey) -> StateRecord | None:
        with self._lock:
            return self._records.get(key)

    def put(self, key: ResourceKey, record: StateRecord) -> None:
        with self._lock:
            self._records[key] = record

    def delete(self, key: ResourceKey) -> None:
        with self._lock:
            self._records.pop(key, None)

    def keys(self) -> list[ResourceKey]:
        with self._lock:
            return sorted(self._records)

    def snapshot(self) -> dict[ResourceKey, StateRecord]:
        with self._lock:
            return dict(self._records)


class FileStateStore:
    """Local YAML state file with write-through per record.

    Every put/delete rewrites the file atomically (temp file + rename) and
    increments ``serial``. A lock serializes writes from worker threads.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._records: dict[ResourceKey, StateRecord] = {}
        self._lock = threading.Lock()
        self._open = False
        self.serial = 0

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> None:
        with self._lock:
            self._records = self._read()
            self._open = True
        logger.info(
            "Opened state file",
            extra={"path": str(self._path), "records": len(self._records), "serial": self.serial},
        )

    def close(self) -> None:
        with self._lock:
            self._open = False

    def _ensure_open(self) -> None:
        if not self._open:
            raise StateStoreError(f"State store is not open: {self._path}")

    def get(self, key: ResourceKey) -> StateRecord | None:
        with self._lock:
            self._ensure_open()
            return self._records.get(key)

    def put(self, key: ResourceKey, record: StateRecord) -> None:
        with self._lock:
            self._ensure_open()
            previous = self._records.get(key)
            self._records[key] = record
            try:
                self._write()
            except StateStoreError:
                if previous is None:
                    self._records.pop(key, None)
                else:
                    self._records[key] = previous
                raise

    def delete(self, key: ResourceKey) -> None:
        with self._lock:
            self._ensure_open()
            previous = self._records.pop(key, None)
            if previous is None:
                return
            try:
                self._write()
            except StateStoreError:
                self._records[key] = previous
                raise

    def keys(self) -> list[ResourceKey]:
        with self._lock:
            self._ensure_open()
            return sorted(self._records)

    def _read(self) -> dict[ResourceKey, StateRecord]:
        if not self._path.exists():
            self.serial = 0
            return {}

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e

        if not isinstance(raw, dict):
            raise StateStoreError(f"State file must contain a YAML mapping: {self._path}")

        version = raw.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(
                f"Unsupported state format version {version} in {self._path}"
            )

        self.serial = int(raw.get("serial", 0))
        records: dict[ResourceKey, StateRecord] = {}
        for item in raw.get("resources", []) or []:
            try:
                record = StateRecord.model_validate(item)
            except ValidationError as e:
                raise StateStoreError(f"Invalid state record in {self._path}: {e}") from e
            records[record.key] = record
        return records

    def _write(self) -> None:
        serial = self.serial + 1
        document: dict[str, Any] = {
            "version": STATE_FORMAT_VERSION,
            "serial": serial,
            "resources": [
                self._records[key].model_dump(mode="json") for key in sorted(self._records)
            ],
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(document, handle, sort_keys=False)
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

        self.serial = serial
