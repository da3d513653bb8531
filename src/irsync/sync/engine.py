"""Core sync engine for bidirectional IR synchronization.

Orchestrates one operation per dequeued change through an explicit state
machine::

    QUEUED -> CONVERTING -> CONFLICT_CHECK -> (CONFLICTED) -> VALIDATING
           -> STORING -> GENERATING -> WRITING -> SUCCEEDED

``FAILED`` is reachable from every stage after QUEUED; ``CANCELLED`` is
reachable before STORING when a newer change supersedes the operation.

Guarantees:

* **One in-flight operation per logical unit.** A newer change from the
  same side supersedes the running one (cancelled at the next stage
  boundary, before any side effect); a change from the opposite side
  waits its turn. The IR store's per-unit file is therefore never written
  concurrently.
* **No partial application of bad input.** Parse and validation failures
  never store or write. A generation failure leaves the already stored IR
  in place (reported through ``SyncErrorInfo.stored_version``) and never
  writes the opposite side. Re-syncing the same IR afterwards regenerates
  any target that is missing or was generated from an older version.
* **Transient I/O is retried** with exponential backoff; everything else
  is terminal.
* **Self-writes are suppressed.** Every target path is registered with
  the suppression table before and after it is written.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from irsync.cache import ConversionCache, file_identity
from irsync.config_schema import RetryConfig
from irsync.core.async_utils import WorkerPool, gather_limited
from irsync.errors import (
    GenerationError,
    IRSyncError,
    IRValidationError,
    ParseError,
    SyncIOError,
)
from irsync.file_handler import remove_file, write_file_atomic
from irsync.ir.migrator import IRMigrator
from irsync.ir.models import IRDocument
from irsync.ir.store import IRStore
from irsync.ir.validator import StructuralValidator, Validator
from irsync.sync.detector import ConflictDetector
from irsync.sync.mapper import PathMapper
from irsync.sync.models import (
    ChangeType,
    ConflictRecord,
    ConflictStatus,
    EngineStage,
    QueuedChange,
    ResolutionChoice,
    Side,
    SideCodec,
    SyncErrorInfo,
    SyncOperation,
)
from irsync.sync.notifier import ConflictNotifier
from irsync.sync.queue import ChangeQueue
from irsync.sync.resolver import ConflictResolver
from irsync.sync.status import SyncStatusTracker
from irsync.sync.watcher import SuppressionTable

logger = logging.getLogger(__name__)

RESOLUTION_TIMEOUT_MESSAGE = "conflict resolution timed out"


def error_info(
    exc: BaseException, stage: EngineStage | None = None
) -> SyncErrorInfo:
    """Build the structured error recorded on a failed operation."""
    if isinstance(exc, IRSyncError):
        return SyncErrorInfo(
            kind=exc.kind,
            message=str(exc),
            stage=stage,
            retryable=exc.retryable,
            stored_version=getattr(exc, "stored_version", None),
        )
    return SyncErrorInfo(
        kind="internal",
        message=f"{type(exc).__name__}: {exc}",
        stage=stage,
    )


class _Superseded(Exception):
    """Raised inside an operation that a newer change replaced."""


@dataclass
class _OperationContext:
    op_id: str
    change: QueuedChange
    stage: EngineStage = EngineStage.QUEUED
    superseded: bool = False
    in_conflict: bool = False


@dataclass
class _WritePlan:
    """What to store and which files to regenerate from it."""

    ir: IRDocument | Mapping[str, Any]
    targets: list[tuple[Side, Path]]
    conflict_id: str | None = None
    force_write: bool = False
    cache_change: QueuedChange | None = None
    notes: list[str] = field(default_factory=list)


class SyncEngine:
    """Orchestrate conversion, conflict handling, storage and generation.

    Args:
        codecs: Converter/generator pair per side.
        store: IR store.
        mapper: Logical id and counterpart path mapping.
        queue: Change queue consumed by ``run()``.
        cache: Conversion cache (a disabled cache is used if omitted).
        detector: Conflict detector (built on *store* if omitted).
        resolver: Conflict resolver (``prefer-A`` if omitted).
        notifier: Conflict notifier (no channels if omitted).
        tracker: Status tracker.
        suppression: Self-write suppression table shared with watchers.
        pool: Worker pool bounding convert/generate/I-O calls.
        validator: IR validator.
        migrator: Migrates converter output to the current schema.
        retry: Retry policy for I/O failures.
        manual_timeout: Seconds to wait for a manual resolution
            (``None`` waits indefinitely).
        propagate_deletes: Remove the counterpart file when a source file
            is deleted.
    """

    def __init__(
        self,
        codecs: Mapping[Side, SideCodec],
        store: IRStore,
        mapper: PathMapper,
        *,
        queue: ChangeQueue | None = None,
        cache: ConversionCache | None = None,
        detector: ConflictDetector | None = None,
        resolver: ConflictResolver | None = None,
        notifier: ConflictNotifier | None = None,
        tracker: SyncStatusTracker | None = None,
        suppression: SuppressionTable | None = None,
        pool: WorkerPool | None = None,
        validator: Validator | None = None,
        migrator: IRMigrator | None = None,
        retry: RetryConfig | None = None,
        manual_timeout: float | None = None,
        propagate_deletes: bool = False,
    ) -> None:
        missing = [s.value for s in Side if s not in codecs]
        if missing:
            raise ValueError(f"Missing codec for side(s): {', '.join(missing)}")
        self._codecs = dict(codecs)
        self._store = store
        self._mapper = mapper
        self._queue = queue or ChangeQueue()
        self._cache = cache or ConversionCache(enabled=False)
        self._detector = detector or ConflictDetector(store)
        self._resolver = resolver or ConflictResolver()
        self._notifier = notifier or ConflictNotifier()
        self._tracker = tracker or SyncStatusTracker()
        self._suppression = suppression or SuppressionTable()
        self._pool = pool or WorkerPool()
        self._validator = validator or StructuralValidator()
        self._migrator = migrator or IRMigrator(self._validator)
        self._retry = retry or RetryConfig()
        self._manual_timeout = manual_timeout
        self._propagate_deletes = propagate_deletes

        self._in_flight: dict[str, _OperationContext] = {}
        self._deferred: dict[str, QueuedChange] = {}
        self._generated: dict[tuple[str, Side], int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def queue(self) -> ChangeQueue:
        return self._queue

    @property
    def tracker(self) -> SyncStatusTracker:
        return self._tracker

    @property
    def resolver(self) -> ConflictResolver:
        return self._resolver

    @property
    def running(self) -> bool:
        return self._running

    def in_flight(self) -> list[str]:
        """Logical ids with an operation currently running."""
        return list(self._in_flight)

    # ------------------------------------------------------------------
    # Intake and dispatch
    # ------------------------------------------------------------------

    def submit(self, change: QueuedChange) -> None:
        """Accept a change from a watcher (or any other producer)."""
        if change.base_version == 0:
            change.base_version = self._store.current_version(change.logical_id)
        queued = self._queue.put(change)
        if queued is not None:
            self._detector.observe(queued)

    async def run(self) -> None:
        """Dispatch queued changes until the queue is closed and empty."""
        self._running = True
        logger.info("Sync engine started (workers=%d)", self._pool.size)
        try:
            while True:
                change = await self._queue.get()
                if change is None:
                    break
                self._dispatch(change)
        finally:
            self._running = False
            logger.info("Sync engine dispatcher stopped")

    async def drain(self) -> None:
        """Wait until the queue is empty and no operation is in flight.

        Dequeues directly when the dispatcher loop is not running.
        """
        while True:
            if not self._running:
                while (change := self._queue.get_nowait()) is not None:
                    self._dispatch(change)
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
                continue
            if len(self._queue) == 0 and not self._deferred:
                return
            await asyncio.sleep(0)

    async def stop(self, drain: bool = True) -> None:
        """Close the queue; optionally finish outstanding work first.

        Without *drain*, running operations are cancelled (and recorded as
        cancelled).
        """
        if drain:
            await self.drain()
        self._queue.close()
        if not drain:
            self._cancel_deferred("engine stopped")
            for task in list(self._tasks):
                task.cancel()
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _dispatch(self, change: QueuedChange) -> None:
        logical_id = change.logical_id
        ctx = self._in_flight.get(logical_id)
        if ctx is None:
            self._start(change)
            return

        if change.side is ctx.change.side and not ctx.in_conflict:
            ctx.superseded = True
        previous = self._deferred.get(logical_id)
        if previous is not None:
            op = self._tracker.create_operation(previous)
            self._tracker.cancel(op.id, note="superseded by a newer change")
        self._deferred[logical_id] = change

    def _start(self, change: QueuedChange) -> None:
        ctx = self._claim(change)
        task = asyncio.get_running_loop().create_task(self._process(ctx))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _claim(self, change: QueuedChange) -> _OperationContext:
        # registered before the task runs so later dispatches see it
        op = self._tracker.create_operation(change)
        ctx = _OperationContext(op_id=op.id, change=change)
        self._in_flight[change.logical_id] = ctx
        return ctx

    def _cancel_deferred(self, note: str) -> None:
        for change in self._deferred.values():
            op = self._tracker.create_operation(change)
            self._tracker.cancel(op.id, note=note)
        self._deferred.clear()

    # ------------------------------------------------------------------
    # Operation pipeline
    # ------------------------------------------------------------------

    async def process_change(self, change: QueuedChange) -> SyncOperation:
        """Run one change through the full pipeline, bypassing the queue.

        Waits for any operation already in flight for the same unit.

        Returns:
            The operation in its terminal state.
        """
        while change.logical_id in self._in_flight:
            await asyncio.sleep(0.01)
        return await self._process(self._claim(change))

    async def _process(self, ctx: _OperationContext) -> SyncOperation:
        logical_id = ctx.change.logical_id
        try:
            return await self._run_operation(ctx)
        finally:
            if self._in_flight.get(logical_id) is ctx:
                del self._in_flight[logical_id]
            deferred = self._deferred.pop(logical_id, None)
            if deferred is not None:
                self._start(deferred)

    async def _run_operation(self, ctx: _OperationContext) -> SyncOperation:
        change = ctx.change
        logical_id = change.logical_id
        self._tracker.start(ctx.op_id)
        ctx.stage = EngineStage.CONVERTING
        try:
            if change.change_type is ChangeType.DELETED:
                return await self._handle_delete(ctx)

            converted = await self._convert(change)
            self._check_superseded(ctx)

            self._enter(ctx, EngineStage.CONFLICT_CHECK)
            record = self._detector.check(logical_id, change.side, change)
            if record is not None:
                outcome = await self._handle_conflict(ctx, record, converted)
                if isinstance(outcome, SyncOperation):
                    return outcome
                plan = outcome
            else:
                target = self._mapper.counterpart_path(change.side, change.file_path)
                plan = _WritePlan(
                    ir=converted,
                    targets=[(change.side.opposite, target)],
                    cache_change=change,
                )

            self._enter(ctx, EngineStage.VALIDATING)
            ir = self._normalize(plan.ir)
            if plan.cache_change is not None:
                self._remember(plan.cache_change, ir)
            if plan.conflict_id is None:
                self._check_superseded(ctx)

            self._enter(ctx, EngineStage.STORING)
            if self._store.has_changed(logical_id, ir):
                entry = await self._with_retry(
                    logical_id, self._store.store, logical_id, ir
                )
                stored_version = entry.version
            else:
                stored_version = self._store.current_version(logical_id)
                if not plan.force_write and not self._targets_behind(
                    logical_id, plan.targets, stored_version
                ):
                    logger.debug("IR for %s unchanged; nothing to write", logical_id)
                    return self._tracker.succeed(
                        ctx.op_id,
                        stored_version=stored_version,
                        note="IR unchanged",
                    )
                if not plan.force_write:
                    logger.info(
                        "IR for %s unchanged but counterpart missing or behind "
                        "v%d; regenerating",
                        logical_id,
                        stored_version,
                    )
                    plan.notes.append("regenerated stale counterpart")

            pending = list(plan.targets)
            try:
                self._enter(ctx, EngineStage.GENERATING)
                outputs = await self._generate(
                    logical_id, ir, plan.targets, stored_version
                )

                self._enter(ctx, EngineStage.WRITING)
                written: list[str] = []
                for (side, path), text in zip(plan.targets, outputs):
                    await self._write(path, text)
                    self._generated[(logical_id, side)] = stored_version
                    pending.remove((side, path))
                    written.append(str(path))
            except (Exception, asyncio.CancelledError):
                # re-syncing the same IR must regenerate these
                for side, _ in pending:
                    self._generated[(logical_id, side)] = stored_version - 1
                raise

            logger.info(
                "Synced %s from side %s (v%d) -> %s",
                logical_id,
                change.side.value,
                stored_version,
                ", ".join(written),
            )
            return self._tracker.succeed(
                ctx.op_id,
                stored_version=stored_version,
                target_paths=written,
                note="; ".join(plan.notes) or None,
            )

        except _Superseded:
            logger.info("Operation for %s superseded by a newer change", logical_id)
            return self._tracker.cancel(ctx.op_id, note="superseded by a newer change")
        except IRSyncError as exc:
            logger.error(
                "Sync of %s failed during %s: %s",
                logical_id,
                ctx.stage.value,
                exc,
            )
            return self._tracker.fail(ctx.op_id, error_info(exc, ctx.stage))
        except asyncio.CancelledError:
            if not self._tracker.get(ctx.op_id).status.is_terminal:
                self._tracker.cancel(ctx.op_id, note="engine stopped")
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected error syncing %s during %s", logical_id, ctx.stage.value
            )
            return self._tracker.fail(ctx.op_id, error_info(exc, ctx.stage))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _enter(self, ctx: _OperationContext, stage: EngineStage) -> None:
        ctx.stage = stage
        self._tracker.set_stage(ctx.op_id, stage)

    def _check_superseded(self, ctx: _OperationContext) -> None:
        if ctx.superseded:
            raise _Superseded()

    def _targets_behind(
        self,
        logical_id: str,
        targets: list[tuple[Side, Path]],
        stored_version: int,
    ) -> bool:
        """``True`` if a target is missing or was generated from older IR."""
        for side, path in targets:
            if not path.exists():
                return True
            generated = self._generated.get((logical_id, side), stored_version)
            if generated < stored_version:
                return True
        return False

    async def _convert(self, change: QueuedChange) -> IRDocument | Mapping[str, Any]:
        if (
            change.source_identity is not None
            and change.source_identity == file_identity(change.file_path)
        ):
            cached = self._cache.get_ir(change.file_path)
            if cached is not None:
                logger.debug("Conversion cache hit for %s", change.file_path)
                return cached

        codec = self._codecs[change.side]
        try:
            return await self._pool.run(
                codec.convert, change.content_snapshot, change.file_path
            )
        except Exception as exc:
            raise ParseError(change.file_path, str(exc)) from exc

    def _remember(self, change: QueuedChange, ir: IRDocument) -> None:
        if change.source_identity is None:
            return
        if change.source_identity == file_identity(change.file_path):
            self._cache.set_ir(change.file_path, ir)

    def _normalize(self, raw: IRDocument | Mapping[str, Any]) -> IRDocument:
        """Migrate converter output to the current schema and validate it."""
        if isinstance(raw, IRDocument):
            if self._migrator.needs_migration(raw):
                return self._migrator.migrate(raw)
            return self._validator.validate_or_throw(raw)
        if isinstance(raw, Mapping):
            return self._migrator.migrate(raw)
        raise IRValidationError(
            f"Converter returned {type(raw).__name__}, expected an IR document"
        )

    async def _generate(
        self,
        logical_id: str,
        ir: IRDocument,
        targets: list[tuple[Side, Path]],
        stored_version: int,
    ) -> list[str]:
        calls = [(self._codecs[side].generate, (ir,)) for side, _ in targets]
        try:
            outputs = await gather_limited(self._pool, calls)
        except Exception as exc:
            raise GenerationError(logical_id, str(exc), stored_version) from exc
        for (side, _), text in zip(targets, outputs):
            if not isinstance(text, str):
                raise GenerationError(
                    logical_id,
                    f"side {side.value} generator returned {type(text).__name__}",
                    stored_version,
                )
        return outputs

    async def _write(self, path: Path, text: str) -> None:
        self._suppression.register(path)
        await self._with_retry(str(path), write_file_atomic, path, text)
        # the watcher may report the write well after it started
        self._suppression.register(path)
        self._cache.invalidate(path)

    async def _with_retry(self, target: str, func: Callable[..., Any], *args: Any) -> Any:
        attempts = self._retry.attempts
        delay = self._retry.backoff_ms / 1000
        for attempt in range(1, attempts + 1):
            try:
                return await self._pool.run(func, *args)
            except OSError as exc:
                if attempt == attempts:
                    raise SyncIOError(target, str(exc), attempts) from exc
                logger.warning(
                    "I/O error on %s (attempt %d/%d): %s; retrying in %.0f ms",
                    target,
                    attempt,
                    attempts,
                    exc,
                    delay * 1000,
                )
                await asyncio.sleep(delay)
                delay *= self._retry.backoff_multiplier
        raise AssertionError("unreachable")  # pragma: no cover

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    async def _handle_conflict(
        self,
        ctx: _OperationContext,
        record: ConflictRecord,
        converted: IRDocument | Mapping[str, Any],
    ) -> _WritePlan | SyncOperation:
        ctx.in_conflict = True
        ctx.stage = EngineStage.CONFLICTED
        record = self._resolver.submit(record)
        self._tracker.record_conflict(ctx.op_id, record.id)
        self._fold_conflict_changes(ctx, record)
        await self._notifier.notify(record)

        if record.is_open:
            record = await self._resolver.wait_for_resolution(
                record.id, self._manual_timeout
            )
        self._detector.forget(record.logical_id)

        if record.status is ConflictStatus.FAILED:
            return self._tracker.fail(
                ctx.op_id,
                SyncErrorInfo(
                    kind="conflict",
                    message=RESOLUTION_TIMEOUT_MESSAGE,
                    stage=EngineStage.CONFLICTED,
                ),
            )
        if record.status is ConflictStatus.SKIPPED:
            return self._tracker.conflict(
                ctx.op_id, note="conflict skipped; both sides left untouched"
            )

        resolution = record.resolution
        note = f"conflict {record.id} resolved: {resolution.choice.value}"
        if resolution.choice is ResolutionChoice.MERGED:
            return _WritePlan(
                ir=resolution.ir,
                targets=[
                    (Side.A, Path(record.change_a.file_path)),
                    (Side.B, Path(record.change_b.file_path)),
                ],
                conflict_id=record.id,
                force_write=True,
                notes=[note],
            )

        winner = resolution.winner
        winning = record.change_for(winner)
        losing = record.change_for(winner.opposite)
        if winning.change_id == ctx.change.change_id:
            ir = converted
        else:
            ir = await self._convert(winning)
        return _WritePlan(
            ir=ir,
            targets=[(losing.side, Path(losing.file_path))],
            conflict_id=record.id,
            force_write=True,
            cache_change=winning,
            notes=[note],
        )

    def _fold_conflict_changes(
        self, ctx: _OperationContext, record: ConflictRecord
    ) -> None:
        """Drop the other conflicting change; the record now carries it."""
        for change in (record.change_a, record.change_b):
            if change.change_id == ctx.change.change_id:
                continue
            if self._queue.discard(change.file_path, change.change_id):
                logger.debug("Discarded queued change %s", change.change_id)
            deferred = self._deferred.get(record.logical_id)
            if deferred is not None and deferred.change_id == change.change_id:
                del self._deferred[record.logical_id]
                op = self._tracker.create_operation(deferred)
                self._tracker.cancel(op.id, note=f"folded into conflict {record.id}")

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    async def _handle_delete(self, ctx: _OperationContext) -> SyncOperation:
        change = ctx.change
        logical_id = change.logical_id
        self._cache.invalidate(change.file_path)
        if not self._propagate_deletes:
            logger.info(
                "Delete propagation disabled; %s removed on side %s",
                change.file_path,
                change.side.value,
            )
            return self._tracker.succeed(ctx.op_id, note="delete not propagated")

        target = self._mapper.counterpart_path(change.side, change.file_path)
        self._enter(ctx, EngineStage.STORING)
        await self._with_retry(logical_id, self._store.delete, logical_id)

        self._enter(ctx, EngineStage.WRITING)
        self._suppression.register(target)
        removed = await self._with_retry(str(target), remove_file, target)
        self._suppression.register(target)
        self._cache.invalidate(target)
        self._detector.forget(logical_id)
        for side in Side:
            self._generated.pop((logical_id, side), None)
        logger.info("Propagated delete of %s to %s", change.file_path, target)
        return self._tracker.succeed(
            ctx.op_id,
            target_paths=[str(target)] if removed else [],
            note="deleted counterpart" if removed else "counterpart already absent",
        )
