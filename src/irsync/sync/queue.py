"""Priority queue of pending per-file changes.

Ordering is by priority tier (``HIGH`` < ``NORMAL`` < ``LOW``), FIFO
within a tier across both sides. A change for a file that already has a
queued entry is *coalesced*: the existing entry keeps its position and
receives the newer content, so rapid edits collapse into one unit of work
carrying the latest snapshot without starving older files.

The heap stores ``(priority, sequence, file_path)``; removed entries are
left in the heap and skipped when popped.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from pathlib import PurePath

from irsync.sync.models import Priority, QueuedChange, Side

logger = logging.getLogger(__name__)

_HIGH_PRIORITY_STEMS = ("main", "app", "index")
_LOW_PRIORITY_MARKERS = (".test.", ".spec.", "__tests__", "_test.")
_LOW_PRIORITY_SUFFIXES = (".md",)


def determine_priority(file_path: str) -> Priority:
    """Entry points first, tests and docs last."""
    path = PurePath(file_path)
    name = path.name.lower()
    if name.split(".", 1)[0] in _HIGH_PRIORITY_STEMS:
        return Priority.HIGH
    lowered = path.as_posix().lower()
    if any(marker in lowered for marker in _LOW_PRIORITY_MARKERS):
        return Priority.LOW
    if name.endswith(_LOW_PRIORITY_SUFFIXES):
        return Priority.LOW
    return Priority.NORMAL


class ChangeQueue:
    """Coalescing priority queue consumed by the sync engine.

    Args:
        max_size: Maximum queued entries; the oldest is dropped (with a
            warning) when a new file would exceed it.
    """

    def __init__(self, max_size: int = 1000) -> None:
        self.max_size = max_size
        self._heap: list[tuple[int, int, str]] = []
        self._entries: dict[str, tuple[int, QueuedChange]] = {}
        self._counter = itertools.count()
        self._not_empty = asyncio.Event()
        self._closed = False

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def put(self, change: QueuedChange) -> QueuedChange | None:
        """Enqueue *change*, or coalesce it into an existing entry.

        Returns:
            The queued entry: *change* itself, or the existing entry it was
            coalesced into. ``None`` if the queue is closed.
        """
        existing = self._entries.get(change.file_path)
        if existing is not None:
            _, queued = existing
            queued.content_snapshot = change.content_snapshot
            queued.change_type = change.change_type
            queued.detected_at = change.detected_at
            queued.source_identity = change.source_identity
            logger.debug("Coalesced change for %s", change.file_path)
            return queued

        if self._closed:
            logger.warning("Queue closed; dropping change for %s", change.file_path)
            return None

        if len(self._entries) >= self.max_size:
            dropped = min(self._entries.items(), key=lambda item: item[1][0])
            del self._entries[dropped[0]]
            logger.warning(
                "Change queue full (%d); dropped oldest change for %s",
                self.max_size,
                dropped[0],
            )

        seq = next(self._counter)
        self._entries[change.file_path] = (seq, change)
        heapq.heappush(self._heap, (int(change.priority), seq, change.file_path))
        self._not_empty.set()
        return change

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def get_nowait(self) -> QueuedChange | None:
        """Pop the next change, or ``None`` if the queue is empty."""
        while self._heap:
            _, seq, path = heapq.heappop(self._heap)
            entry = self._entries.get(path)
            if entry is None or entry[0] != seq:
                continue
            del self._entries[path]
            return entry[1]
        return None

    async def get(self) -> QueuedChange | None:
        """Wait for the next change.

        Returns:
            The next change, or ``None`` once the queue is closed and empty.
        """
        while True:
            change = self.get_nowait()
            if change is not None:
                return change
            if self._closed:
                return None
            self._not_empty.clear()
            await self._not_empty.wait()

    def peek_all(self) -> list[QueuedChange]:
        """Queued changes in dequeue order, without removing them."""
        live = [
            (int(change.priority), seq, change)
            for seq, change in self._entries.values()
        ]
        return [change for _, _, change in sorted(live, key=lambda t: t[:2])]

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def discard(
        self, file_path: str, change_id: str | None = None
    ) -> QueuedChange | None:
        """Remove the queued change for *file_path*, if any.

        When *change_id* is given, the entry is only removed if it is that
        change.
        """
        entry = self._entries.get(file_path)
        if entry is None:
            return None
        if change_id is not None and entry[1].change_id != change_id:
            return None
        del self._entries[file_path]
        return entry[1]

    def discard_logical(
        self, logical_id: str, side: Side | None = None
    ) -> list[QueuedChange]:
        """Remove queued changes for *logical_id* (optionally one side)."""
        removed: list[QueuedChange] = []
        for path, (_, change) in list(self._entries.items()):
            if change.logical_id != logical_id:
                continue
            if side is not None and change.side is not side:
                continue
            del self._entries[path]
            removed.append(change)
        return removed

    def close(self) -> None:
        """Stop accepting new files and wake any waiting consumer."""
        self._closed = True
        self._not_empty.set()

    def reopen(self) -> None:
        self._closed = False
        if not self._entries:
            self._not_empty.clear()
