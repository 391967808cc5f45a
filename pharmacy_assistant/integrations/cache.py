from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
import itertools
import json
import logging
from pathlib import Path
import sqlite3
from threading import Lock, RLock
import time
from typing import Any, Callable, Protocol

LOGGER = logging.getLogger("pipeline.cache")

DEFAULT_TTL_SECONDS = 24 * 3600


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    stored_at: float
    generation: int


class CacheBackend(Protocol):
    def load(self, key: str) -> CacheEntry | None: ...

    def store(self, key: str, entry: CacheEntry) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryBackend:
    """Bounded LRU mapping kept in process memory."""

    def __init__(self, *, maxsize: int = 1024) -> None:
        self.maxsize = max(1, int(maxsize))
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def load(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    def store(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()


class SqliteBackend:
    """Persistent backend; values must be JSON serializable."""

    def __init__(self, path: str | Path, *, table: str = "ttl_cache") -> None:
        self.path = str(path)
        self.table = table
        if self.path != ":memory:":
            Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(self.path, check_same_thread=False)
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {self.table} ("
            "key TEXT PRIMARY KEY, value TEXT NOT NULL, stored_at REAL NOT NULL, generation INTEGER NOT NULL)"
        )
        self._connection.commit()

    def load(self, key: str) -> CacheEntry | None:
        row = self._connection.execute(
            f"SELECT value, stored_at, generation FROM {self.table} WHERE key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return None
        return CacheEntry(value=json.loads(row[0]), stored_at=float(row[1]), generation=int(row[2]))

    def store(self, key: str, entry: CacheEntry) -> None:
        self._connection.execute(
            f"INSERT OR REPLACE INTO {self.table} (key, value, stored_at, generation) VALUES (?, ?, ?, ?)",
            (key, json.dumps(entry.value), entry.stored_at, entry.generation),
        )
        self._connection.commit()

    def delete(self, key: str) -> None:
        self._connection.execute(f"DELETE FROM {self.table} WHERE key = ?", (key,))
        self._connection.commit()

    def clear(self) -> None:
        self._connection.execute(f"DELETE FROM {self.table}")
        self._connection.commit()

    def close(self) -> None:
        self._connection.close()


class TTLCache:
    """Thread-safe TTL cache with lazy expiry and generation-ordered writes.

    Callers reserve a generation before starting a slow lookup and pass it to
    ``set``. A write carrying an older generation than the stored entry is
    dropped, so a slow lookup never clobbers a fresher one.
    """

    def __init__(
        self,
        *,
        name: str = "cache",
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        backend: CacheBackend | None = None,
        time_func: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self.ttl_seconds = max(0, int(ttl_seconds))
        self._backend = backend or InMemoryBackend()
        self._time_func = time_func or time.time
        self._lock = RLock()
        self._generations = itertools.count(1)
        self._generation_lock = Lock()

    def next_generation(self) -> int:
        with self._generation_lock:
            return next(self._generations)

    def get(self, key: str) -> Any | None:
        normalized = normalize_key(key)
        if not normalized:
            return None
        with self._lock:
            entry = self._backend.load(normalized)
            if entry is None:
                return None
            if self.ttl_seconds and self._time_func() - entry.stored_at > self.ttl_seconds:
                self._backend.delete(normalized)
                return None
            return entry.value

    def set(self, key: str, value: Any, *, generation: int | None = None) -> bool:
        normalized = normalize_key(key)
        if not normalized:
            return False
        resolved_generation = self.next_generation() if generation is None else int(generation)
        with self._lock:
            existing = self._backend.load(normalized)
            if existing is not None and existing.generation > resolved_generation:
                LOGGER.debug(
                    "[PIPELINE] %s cache write skipped for stale generation | key='%s' stored=%s incoming=%s",
                    self.name,
                    normalized,
                    existing.generation,
                    resolved_generation,
                )
                return False
            self._backend.store(
                normalized,
                CacheEntry(value=value, stored_at=self._time_func(), generation=resolved_generation),
            )
            return True

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        generation = self.next_generation()
        value = loader()
        if value is not None:
            self.set(key, value, generation=generation)
        return value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._backend.delete(normalize_key(key))

    def clear(self) -> None:
        with self._lock:
            self._backend.clear()


def build_cache(
    *,
    name: str,
    backend_name: str = "memory",
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    data_dir: str | Path | None = None,
) -> TTLCache:
    if backend_name == "sqlite":
        base = Path(data_dir or "./data").expanduser()
        backend: CacheBackend = SqliteBackend(base / "cache" / f"{name}.sqlite3")
    else:
        backend = InMemoryBackend()
    return TTLCache(name=name, ttl_seconds=ttl_seconds, backend=backend)


def normalize_key(key: str) -> str:
    return " ".join(str(key or "").strip().lower().split())
