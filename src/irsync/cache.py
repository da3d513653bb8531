"""Conversion cache keyed by file identity.

Parsing and converting a source file is the most expensive step of a sync,
and the same file is often seen several times in a row (editor autosave,
retries, conflict resolution re-reading the opposite side). The cache
memoizes ASTs and IR documents per path.

An entry is valid only while

* the file's ``(st_mtime_ns, st_size)`` matches the value recorded when
  the entry was cached, and
* the entry is younger than the TTL.

Stale entries are evicted when they are detected. When the total entry
count or the estimated memory exceeds its limit, the oldest 10% of entries
across both kinds are dropped.

The cache is shared by every worker thread; all state is guarded by one
lock so each key is replaced atomically.
"""

from __future__ import annotations

import json
import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel

from irsync.ir.models import IRDocument

logger = logging.getLogger(__name__)

FileIdentity = tuple[int, int] | None


class CacheKind(str, Enum):
    AST = "ast"
    IR = "ir"


@dataclass
class _CacheEntry:
    value: Any
    identity: FileIdentity
    cached_at: float
    size_bytes: int


class CacheStats(BaseModel):
    """Snapshot of cache counters."""

    ast_hits: int = 0
    ast_misses: int = 0
    ir_hits: int = 0
    ir_misses: int = 0
    ast_entries: int = 0
    ir_entries: int = 0
    estimated_bytes: int = 0
    evictions: int = 0

    model_config = {"frozen": True}

    @property
    def hit_rate(self) -> float:
        hits = self.ast_hits + self.ir_hits
        total = hits + self.ast_misses + self.ir_misses
        return hits / total if total else 0.0


def file_identity(path: str | Path) -> FileIdentity:
    """``(mtime_ns, size)`` of *path*, or ``None`` if it does not exist."""
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return None
    return (st.st_mtime_ns, st.st_size)


def _estimate_size(value: Any) -> int:
    if isinstance(value, BaseModel):
        return len(value.model_dump_json())
    try:
        return len(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return len(repr(value))


class ConversionCache:
    """Thread-safe AST/IR memo with TTL and size-bounded eviction.

    Args:
        ttl_seconds: Maximum entry age.
        max_entries: Maximum AST + IR entries before eviction.
        max_memory_mb: Maximum estimated serialized size before eviction.
        enabled: A disabled cache always misses and stores nothing.
        clock: Time source, injectable for tests.
    """

    EVICTION_FRACTION = 0.1

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 1000,
        max_memory_mb: float = 100,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.max_memory_bytes = int(max_memory_mb * 1024 * 1024)
        self.enabled = enabled
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[CacheKind, dict[str, _CacheEntry]] = {
            CacheKind.AST: {},
            CacheKind.IR: {},
        }
        self._hits = {CacheKind.AST: 0, CacheKind.IR: 0}
        self._misses = {CacheKind.AST: 0, CacheKind.IR: 0}
        self._evictions = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_ast(self, path: str | Path) -> Any | None:
        return self._get(CacheKind.AST, path)

    def set_ast(self, path: str | Path, ast: Any) -> None:
        self._set(CacheKind.AST, path, ast)

    def get_ir(self, path: str | Path) -> IRDocument | None:
        return self._get(CacheKind.IR, path)

    def set_ir(self, path: str | Path, ir: IRDocument) -> None:
        self._set(CacheKind.IR, path, ir)

    def invalidate(self, path: str | Path) -> None:
        """Drop both cache kinds for *path*."""
        key = self._key(path)
        with self._lock:
            for entries in self._entries.values():
                entries.pop(key, None)

    def clear(self) -> None:
        """Drop every entry and reset the counters."""
        with self._lock:
            for kind in CacheKind:
                self._entries[kind].clear()
                self._hits[kind] = 0
                self._misses[kind] = 0
            self._evictions = 0

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                ast_hits=self._hits[CacheKind.AST],
                ast_misses=self._misses[CacheKind.AST],
                ir_hits=self._hits[CacheKind.IR],
                ir_misses=self._misses[CacheKind.IR],
                ast_entries=len(self._entries[CacheKind.AST]),
                ir_entries=len(self._entries[CacheKind.IR]),
                estimated_bytes=self._total_bytes(),
                evictions=self._evictions,
            )

    def __len__(self) -> int:
        with self._lock:
            return sum(len(e) for e in self._entries.values())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _key(path: str | Path) -> str:
        return os.path.abspath(path)

    def _get(self, kind: CacheKind, path: str | Path) -> Any | None:
        if not self.enabled:
            return None
        key = self._key(path)
        identity = file_identity(key)
        with self._lock:
            entry = self._entries[kind].get(key)
            if entry is None:
                self._misses[kind] += 1
                return None
            expired = self._clock() - entry.cached_at >= self.ttl_seconds
            if expired or entry.identity != identity:
                del self._entries[kind][key]
                self._misses[kind] += 1
                logger.debug(
                    "Evicted stale %s cache entry for %s (%s)",
                    kind.value,
                    key,
                    "ttl" if expired else "file changed",
                )
                return None
            self._hits[kind] += 1
            return entry.value

    def _set(self, kind: CacheKind, path: str | Path, value: Any) -> None:
        if not self.enabled:
            return
        key = self._key(path)
        entry = _CacheEntry(
            value=value,
            identity=file_identity(key),
            cached_at=self._clock(),
            size_bytes=_estimate_size(value),
        )
        with self._lock:
            self._entries[kind][key] = entry
            self._evict_if_needed()

    def _total_bytes(self) -> int:
        return sum(
            e.size_bytes for entries in self._entries.values() for e in entries.values()
        )

    def _evict_if_needed(self) -> None:
        count = sum(len(e) for e in self._entries.values())
        if count <= self.max_entries and self._total_bytes() <= self.max_memory_bytes:
            return

        ordered = sorted(
            (
                (entry.cached_at, kind, key)
                for kind, entries in self._entries.items()
                for key, entry in entries.items()
            ),
            key=lambda item: item[0],
        )
        to_remove = math.ceil(count * self.EVICTION_FRACTION)
        for _, kind, key in ordered[:to_remove]:
            del self._entries[kind][key]
        self._evictions += to_remove
        logger.debug("Evicted %d oldest cache entries", to_remove)
