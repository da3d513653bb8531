"""Bidirectional sync façade.

Builds every sync component from a ``SyncConfig`` and runs the file
watchers plus one engine dispatcher as asyncio tasks.

``watch.mode`` picks the source of truth. In ``universal`` mode both
roots are watched and concurrent edits go through conflict handling. In
``side-A`` or ``side-B`` mode only that root is watched, the other side
is generated output, and conflict detection is switched off.

Usage:
    sync = BidirectionalSync(config, codec_a, codec_b)
    await sync.start()
    ...
    await sync.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

from irsync.cache import ConversionCache, file_identity
from irsync.config_schema import SyncConfig
from irsync.core.async_utils import WorkerPool
from irsync.file_handler import read_file_async
from irsync.ir.migrator import IRMigrator
from irsync.ir.store import IRStore
from irsync.ir.validator import StructuralValidator, Validator
from irsync.sync.detector import ConflictDetector
from irsync.sync.engine import SyncEngine
from irsync.sync.mapper import PathMapper
from irsync.sync.models import (
    ChangeType,
    ConflictNotification,
    ConflictRecord,
    QueuedChange,
    Resolution,
    Side,
    SideCodec,
    StatusEvent,
    SyncStatistics,
)
from irsync.sync.notifier import (
    CallbackChannel,
    ConflictNotifier,
    DiskChannel,
    LogChannel,
    NotificationChannel,
    WebhookChannel,
)
from irsync.sync.queue import ChangeQueue, determine_priority
from irsync.sync.resolver import ConflictResolver
from irsync.sync.status import SyncStatusTracker
from irsync.sync.watcher import FileWatcher, SuppressionTable

logger = logging.getLogger(__name__)

_MODE_SOURCES: dict[str, tuple[Side, ...]] = {
    "universal": (Side.A, Side.B),
    "side-A": (Side.A,),
    "side-B": (Side.B,),
}


def source_sides(mode: str) -> tuple[Side, ...]:
    """Sides edited by hand in *mode*; any other side is generated."""
    try:
        return _MODE_SOURCES[mode]
    except KeyError:
        valid = ", ".join(_MODE_SOURCES)
        raise ValueError(
            f"Unknown sync mode {mode!r}. Valid modes: {valid}"
        ) from None


class BidirectionalSync:
    """Keep side A and side B in sync through the IR store.

    Args:
        config: Validated configuration; both watch roots are required.
        codec_a: Converter/generator for side A.
        codec_b: Converter/generator for side B.
        validator: IR validator (``StructuralValidator`` by default).
        migrator: Schema migrator; extra steps may be registered on it.
        extra_channels: Additional conflict notification channels.

    Raises:
        ValueError: A watch root is missing.
    """

    def __init__(
        self,
        config: SyncConfig,
        codec_a: SideCodec,
        codec_b: SideCodec,
        validator: Validator | None = None,
        migrator: IRMigrator | None = None,
        extra_channels: list[NotificationChannel] | None = None,
    ) -> None:
        self.config = config
        self.mode = config.watch.mode
        self.sources = source_sides(self.mode)
        self.mapper = PathMapper(config.watch)
        self.validator = validator or StructuralValidator()
        self.migrator = migrator or IRMigrator(self.validator)

        store_dir = Path(config.engine.store_dir)
        conflict_dir = (
            Path(config.conflict.conflict_dir)
            if config.conflict.conflict_dir
            else None
        )

        self.suppression = SuppressionTable(config.watch.suppression_ms)
        self.store = IRStore(store_dir, self.validator, self.migrator)
        self.cache = ConversionCache(
            ttl_seconds=config.cache.ttl_seconds,
            max_entries=config.cache.max_entries,
            max_memory_mb=config.cache.max_memory_mb,
            enabled=config.cache.enabled,
        )
        self.queue = ChangeQueue(config.engine.queue_max_size)
        # one editable side cannot produce concurrent edits
        window_ms = config.conflict.window_ms if len(self.sources) > 1 else 0
        self.detector = ConflictDetector(self.store, window_ms)
        self.tracker = SyncStatusTracker()
        self.resolver = ConflictResolver(
            config.conflict.strategy, conflict_root=conflict_dir
        )

        self._callbacks = CallbackChannel()
        channels: list[NotificationChannel] = [LogChannel(), self._callbacks]
        if config.conflict.webhook_url:
            channels.append(WebhookChannel(config.conflict.webhook_url))
        if conflict_dir is not None:
            channels.append(DiskChannel(conflict_dir))
        channels.extend(extra_channels or [])
        self.notifier = ConflictNotifier(channels)

        self.pool = WorkerPool(config.engine.worker_pool_size)
        self.engine = SyncEngine(
            {Side.A: codec_a, Side.B: codec_b},
            self.store,
            self.mapper,
            queue=self.queue,
            cache=self.cache,
            detector=self.detector,
            resolver=self.resolver,
            notifier=self.notifier,
            tracker=self.tracker,
            suppression=self.suppression,
            pool=self.pool,
            validator=self.validator,
            migrator=self.migrator,
            retry=config.retry,
            manual_timeout=config.conflict.manual_timeout_seconds,
            propagate_deletes=config.engine.propagate_deletes,
        )

        exclude = [store_dir] + ([conflict_dir] if conflict_dir else [])
        self.watchers = {
            side: FileWatcher(
                side,
                self.mapper,
                self.engine.submit,
                self.suppression,
                debounce_ms=config.watch.debounce_ms,
                exclude_dirs=exclude,
            )
            for side in self.sources
        }
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the source-side watchers and the engine dispatcher."""
        if self._tasks:
            logger.warning("Bidirectional sync already running")
            return
        self.queue.reopen()
        for watcher in self.watchers.values():
            watcher.reset()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self.engine.run(), name="irsync-engine"),
            *(
                loop.create_task(watcher.run(), name=f"irsync-watch-{side.value}")
                for side, watcher in self.watchers.items()
            ),
        ]
        logger.info(
            "Bidirectional sync started: A=%s B=%s (mode=%s, watching %s, "
            "strategy=%s)",
            self.mapper.root(Side.A),
            self.mapper.root(Side.B),
            self.mode,
            "+".join(side.value for side in self.sources),
            self.config.conflict.strategy,
        )

    async def stop(self, drain: bool = True) -> None:
        """Stop the watchers, then the engine.

        With *drain*, debounced and queued changes are processed first.
        """
        for watcher in self.watchers.values():
            if drain:
                await watcher.flush_pending()
            await watcher.stop()
        await self.engine.stop(drain=drain)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Bidirectional sync stopped")

    # ------------------------------------------------------------------
    # Manual operation
    # ------------------------------------------------------------------

    async def submit_path(self, path: str | Path) -> QueuedChange:
        """Read *path* from disk and enqueue it as a change.

        Raises:
            ValueError: *path* is not a source file under either root, or
                lies on the generated side in a single-source mode.
        """
        resolved = Path(path).resolve()
        side = self.mapper.side_of(resolved)
        if side is None or not self.mapper.is_source_file(side, resolved):
            raise ValueError(f"Not a source file under a watched root: {path}")
        if side not in self.sources:
            raise ValueError(
                f"Side {side.value} is generated output in {self.mode} mode: "
                f"{path}"
            )

        identity = file_identity(resolved)
        if identity is None:
            content, kind = "", ChangeType.DELETED
        else:
            content, _, _ = await read_file_async(str(resolved))
            kind = ChangeType.MODIFIED

        change = QueuedChange(
            file_path=str(resolved),
            side=side,
            priority=determine_priority(str(resolved)),
            detected_at=time.time(),
            content_snapshot=content,
            change_type=kind,
            logical_id=self.mapper.logical_id(side, resolved),
            source_identity=identity,
        )
        self.engine.submit(change)
        return change

    async def drain(self) -> None:
        """Wait for every queued change to finish."""
        await self.engine.drain()

    def resolve(
        self, conflict_id: str, resolution: Resolution | Side | str
    ) -> ConflictRecord:
        return self.resolver.resolve(conflict_id, resolution)

    def pending_conflicts(self) -> list[ConflictRecord]:
        return self.resolver.pending()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def on_status_change(
        self, handler: Callable[[StatusEvent], None]
    ) -> Callable[[], None]:
        return self.tracker.on_status_change(handler)

    def on_conflict(
        self, handler: Callable[[ConflictNotification], None]
    ) -> Callable[[], None]:
        return self._callbacks.subscribe(handler)

    def statistics(self) -> SyncStatistics:
        return self.tracker.statistics()
