"""File watching with per-path debounce and self-write suppression.

One ``FileWatcher`` observes one side's root with ``watchfiles.awatch``.
Raw events go through three filters before a ``QueuedChange`` reaches the
sink:

1. **Source filter** -- only the side's source files (extension, hidden
   segments, ignore patterns, excluded directories).
2. **Suppression** -- paths the engine just wrote are registered in a
   shared ``SuppressionTable``; their events are dropped while the
   window is open. This is what breaks the
   convert-A -> generate-B -> watch-B -> convert-B loop.
3. **Debounce** -- each raw event resets a per-path timer; the change is
   emitted once the path has been quiet for ``debounce_ms``, carrying the
   latest content.

Suppression is checked both when the raw event arrives and again when
the debounced change is emitted.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterable

from watchfiles import Change, awatch

from irsync.cache import file_identity
from irsync.core.async_utils import run_sync
from irsync.file_handler import read_file_with_encoding
from irsync.sync.mapper import PathMapper
from irsync.sync.models import ChangeType, QueuedChange, Side
from irsync.sync.queue import determine_priority

logger = logging.getLogger(__name__)

ChangeSink = Callable[[QueuedChange], None]

_CHANGE_TYPES = {
    Change.added: ChangeType.ADDED,
    Change.modified: ChangeType.MODIFIED,
    Change.deleted: ChangeType.DELETED,
}


def _normalize(path: str | Path) -> str:
    return os.path.abspath(path)


class SuppressionTable:
    """Paths recently written by the engine, with expiry times.

    Args:
        window_ms: How long a registered path stays suppressed.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        window_ms: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window_ms / 1000
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def register(self, path: str | Path) -> None:
        """Suppress events on *path* for the next window."""
        self._expiry[_normalize(path)] = self._clock() + self.window

    def is_suppressed(self, path: str | Path) -> bool:
        key = _normalize(path)
        expiry = self._expiry.get(key)
        if expiry is None:
            return False
        if self._clock() >= expiry:
            del self._expiry[key]
            return False
        return True

    def prune(self) -> None:
        """Forget expired registrations."""
        now = self._clock()
        for key in [k for k, exp in self._expiry.items() if exp <= now]:
            del self._expiry[key]

    def __len__(self) -> int:
        return len(self._expiry)


class FileWatcher:
    """Watch one side's root and emit debounced ``QueuedChange`` objects.

    Args:
        side: The side this watcher observes.
        mapper: Maps paths to logical ids and decides what is a source file.
        sink: Receives each emitted change (usually ``SyncEngine.submit``).
        suppression: Shared self-write suppression table.
        debounce_ms: Per-path write quiescence before emitting.
        exclude_dirs: Directories under the root never reported (store,
            conflict records).
    """

    def __init__(
        self,
        side: Side,
        mapper: PathMapper,
        sink: ChangeSink,
        suppression: SuppressionTable,
        debounce_ms: int = 200,
        exclude_dirs: Iterable[str | Path] = (),
    ) -> None:
        self.side = side
        self.root = mapper.root(side)
        self._mapper = mapper
        self._sink = sink
        self._suppression = suppression
        self._debounce = debounce_ms / 1000
        self._exclude_dirs = [Path(d).resolve() for d in exclude_dirs]
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._pending_kind: dict[str, ChangeType] = {}
        self._emit_tasks: set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()
        self.emitted = 0
        self.suppressed = 0

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def accepts(self, path: str) -> bool:
        resolved = Path(path).resolve()
        if any(resolved.is_relative_to(d) for d in self._exclude_dirs):
            return False
        return self._mapper.is_source_file(self.side, resolved)

    def filter_changes(self, change: Change, path: str) -> bool:
        """``watch_filter`` passed to ``awatch``."""
        return self.accepts(path)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle_raw_event(self, change: Change, path: str) -> None:
        """Feed one raw filesystem event into the debounce pipeline.

        Must be called from the running event loop.
        """
        if not self.accepts(path):
            return
        key = _normalize(path)
        if self._suppression.is_suppressed(key):
            self.suppressed += 1
            logger.debug("Suppressed self-write event for %s", key)
            return

        self._pending_kind[key] = _CHANGE_TYPES.get(change, ChangeType.MODIFIED)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self._debounce, self._flush, key)

    def _flush(self, key: str) -> None:
        self._timers.pop(key, None)
        kind = self._pending_kind.pop(key, ChangeType.MODIFIED)
        task = asyncio.get_running_loop().create_task(self._emit(key, kind))
        self._emit_tasks.add(task)
        task.add_done_callback(self._emit_tasks.discard)

    async def _emit(self, key: str, kind: ChangeType) -> None:
        if self._suppression.is_suppressed(key):
            self.suppressed += 1
            logger.debug("Suppressed self-write change for %s", key)
            return

        content = ""
        identity = None
        if kind is not ChangeType.DELETED:
            try:
                identity = file_identity(key)
                content, _ = await run_sync(read_file_with_encoding, Path(key))
            except FileNotFoundError:
                kind = ChangeType.DELETED
            except OSError as exc:
                logger.warning("Cannot read changed file %s: %s", key, exc)
                return

        change = QueuedChange(
            file_path=key,
            side=self.side,
            priority=determine_priority(key),
            detected_at=time.time(),
            content_snapshot=content,
            change_type=kind,
            logical_id=self._mapper.logical_id(self.side, key),
            source_identity=identity,
        )
        self.emitted += 1
        logger.debug(
            "Detected %s change on side %s: %s",
            kind.value,
            self.side.value,
            key,
        )
        self._sink(change)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Allow ``run()`` again after ``stop()``."""
        self._stop_event.clear()

    async def run(self) -> None:
        """Watch until ``stop()`` is called.

        Returns immediately if ``stop()`` was called before ``run()``.
        """
        logger.info("Watching side %s: %s", self.side.value, self.root)
        async for changes in awatch(
            self.root,
            watch_filter=self.filter_changes,
            recursive=True,
            stop_event=self._stop_event,
        ):
            for change, path in changes:
                self.handle_raw_event(change, path)
        logger.info("Stopped watching side %s", self.side.value)

    async def stop(self) -> None:
        """Stop watching and drop pending debounce timers."""
        self._stop_event.set()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending_kind.clear()
        if self._emit_tasks:
            await asyncio.gather(*self._emit_tasks, return_exceptions=True)

    async def flush_pending(self) -> None:
        """Emit every debounced change immediately."""
        for key in list(self._timers):
            self._timers.pop(key).cancel()
            self._flush(key)
        if self._emit_tasks:
            await asyncio.gather(*list(self._emit_tasks))
