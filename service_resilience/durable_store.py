"""
Durable Store: abstract interface + in-memory and file-backed implementations.

What is a durable store here?
  A key-value facility that outlives the process that wrote to it.  The host
  process can be killed at any instant; whatever a breaker wrote before that
  moment is what the next process instance reads back on startup.

Contract:
  - get(key) returns the last value written for key, or None if never written.
  - set(key, value) overwrites the whole value.  There are no partial
    updates: one key holds one complete JSON object.
  - Any backend failure raises StorageError.  Callers decide what to do with
    it; the store never retries on its own.

Production backends:
  JsonFileDurableStore below is crash-safe on a single host.  A Redis backend
  is the same three lines:

      GET  circuit_openai
      SET  circuit_openai '{"state": "OPEN", ...}'

  No NX, no expiry.  Breaker state must never expire: dropping it would
  silently forgive a service that is still failing.
"""

import json
import logging
import os
import re
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

_VALID_KEY = re.compile(r"[A-Za-z0-9_.-]+")


class StorageError(Exception):
    """A durable read or write did not complete."""


class DurableStore(ABC):
    """
    Minimal interface for a durable backend.

    Concrete implementations: InMemoryDurableStore (tests/single-process),
    JsonFileDurableStore (one JSON file per key on local disk).
    """

    @abstractmethod
    def get(self, key: str) -> Optional[dict]:
        """Return the stored value for this key, or None if never written."""
        ...

    @abstractmethod
    def set(self, key: str, value: dict) -> None:
        """
        Overwrite the value for this key.

        Must not return until the value is durable: a reader in a different
        process that runs after set() returns sees the new value.
        """
        ...


class InMemoryDurableStore(DurableStore):
    """
    Thread-safe in-memory implementation. Suitable for:
      - Tests (the store object outlives the breakers built on it, so a
        "restart" is just building new breakers over the same store)
      - Single-process applications that accept losing state on exit

    Values are JSON round-tripped on the way in and out, so no caller ever
    holds a reference into the store's own data.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._failures_pending = 0
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: dict) -> None:
        encoded = json.dumps(value, sort_keys=True)
        with self._lock:
            if self._failures_pending:
                self._failures_pending -= 1
                raise StorageError(f"Simulated write failure for key={key!r}")
            self._data[key] = encoded

    def fail_next_writes(self, count: int = 1) -> None:
        """Make the next `count` set() calls raise StorageError without writing."""
        with self._lock:
            self._failures_pending = count

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class JsonFileDurableStore(DurableStore):
    """
    One JSON file per key under `directory`.

    Crash safety: write-to-temp then rename:
      1. Write the new value to a temp file in the SAME directory.
      2. flush() + fsync() so the bytes are on disk, not in the page cache.
      3. os.replace() the temp file over the target.

    os.replace is atomic on POSIX and Windows: a reader (or a process started
    after a crash) sees either the old file or the new one, never a half
    written file.  The temp file must be on the same filesystem as the target
    or the rename is not atomic, hence the same directory.
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self._dir = Path(directory)
        # Serialises writers within this process; cross-process writers are
        # last-writer-wins by construction (whole-object overwrite).
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, key: str) -> Path:
        if not _VALID_KEY.fullmatch(key):
            raise StorageError(f"Invalid storage key: {key!r}")
        return self._dir / f"{key}.json"

    def get(self, key: str) -> Optional[dict]:
        path = self._path(key)
        try:
            with path.open("r", encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise StorageError(f"Cannot read {path}: {exc}") from exc

    def set(self, key: str, value: dict) -> None:
        path = self._path(key)
        with self._lock:
            try:
                self._dir.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=self._dir, prefix=f".{key}.", suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as fh:
                        json.dump(value, fh, sort_keys=True)
                        fh.flush()
                        os.fsync(fh.fileno())
                    os.replace(tmp_name, path)
                except BaseException:
                    # Never leave a stray temp file behind on failure
                    try:
                        os.unlink(tmp_name)
                    except FileNotFoundError:
                        pass
                    raise
            except (OSError, TypeError, ValueError) as exc:
                logger.error("Durable write failed for key=%r: %s", key, exc)
                raise StorageError(f"Cannot write {path}: {exc}") from exc
