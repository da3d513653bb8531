"""Lifecycle tracking for sync operations.

Every dequeued change gets its own ``SyncOperation``. The tracker enforces
the status graph::

    queued -> running -> succeeded | conflicted | failed | cancelled
    queued -> cancelled

Terminal operations are immutable; a later attempt for the same logical
unit creates a new operation, so the map doubles as an audit trail.

Subscribers registered with ``on_status_change()`` receive a
``StatusEvent`` for every status change and every engine stage change.
A subscriber that raises is logged and does not affect the others.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable

from irsync.errors import InvalidTransitionError
from irsync.sync.models import (
    EngineStage,
    OperationStatus,
    QueuedChange,
    StatusEvent,
    SyncErrorInfo,
    SyncOperation,
    SyncStatistics,
)

logger = logging.getLogger(__name__)

StatusHandler = Callable[[StatusEvent], None]

_ALLOWED: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.QUEUED: frozenset(
        {OperationStatus.RUNNING, OperationStatus.CANCELLED}
    ),
    OperationStatus.RUNNING: frozenset(
        {
            OperationStatus.SUCCEEDED,
            OperationStatus.CONFLICTED,
            OperationStatus.FAILED,
            OperationStatus.CANCELLED,
        }
    ),
}

_TERMINAL_STAGE = {
    OperationStatus.SUCCEEDED: EngineStage.SUCCEEDED,
    OperationStatus.CONFLICTED: EngineStage.CONFLICTED,
    OperationStatus.FAILED: EngineStage.FAILED,
    OperationStatus.CANCELLED: EngineStage.CANCELLED,
}


class SyncStatusTracker:
    """In-memory map of operations with subscriptions and statistics.

    Args:
        max_operations: Keep at most this many terminal operations (oldest
            dropped first). ``None`` keeps all of them.
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        max_operations: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_operations = max_operations
        self._clock = clock
        self._operations: OrderedDict[str, SyncOperation] = OrderedDict()
        self._handlers: list[StatusHandler] = []
        self._conflicts_detected = 0

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_status_change(self, handler: StatusHandler) -> Callable[[], None]:
        """Subscribe *handler*; returns a function that unsubscribes it."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create_operation(self, change: QueuedChange) -> SyncOperation:
        op = SyncOperation(
            logical_id=change.logical_id,
            side=change.side,
            file_path=change.file_path,
            change_id=change.change_id,
            created_at=self._clock(),
        )
        self._operations[op.id] = op
        self._emit(op, None, None)
        return op

    def start(self, op_id: str) -> SyncOperation:
        return self._transition(
            op_id,
            OperationStatus.RUNNING,
            stage=EngineStage.CONVERTING,
            started_at=self._clock(),
        )

    def set_stage(self, op_id: str, stage: EngineStage) -> SyncOperation:
        """Record a non-terminal engine stage of a running operation."""
        op = self.get(op_id)
        if op.status is not OperationStatus.RUNNING:
            raise InvalidTransitionError(op_id, op.status.value, stage.value)
        if op.stage is stage:
            return op
        updated = op.model_copy(update={"stage": stage})
        self._operations[op_id] = updated
        self._emit(updated, op.status, op.stage)
        return updated

    def record_conflict(self, op_id: str, conflict_id: str) -> SyncOperation:
        """Attach a conflict to a running operation."""
        self._conflicts_detected += 1
        op = self.get(op_id)
        updated = op.model_copy(
            update={"conflict_id": conflict_id, "stage": EngineStage.CONFLICTED}
        )
        self._operations[op_id] = updated
        self._emit(updated, op.status, op.stage)
        return updated

    def succeed(
        self,
        op_id: str,
        stored_version: int | None = None,
        target_paths: list[str] | None = None,
        note: str | None = None,
    ) -> SyncOperation:
        return self._transition(
            op_id,
            OperationStatus.SUCCEEDED,
            stored_version=stored_version,
            target_paths=list(target_paths or []),
            note=note,
        )

    def conflict(self, op_id: str, note: str | None = None) -> SyncOperation:
        """Finish an operation whose conflict left both sides untouched."""
        return self._transition(op_id, OperationStatus.CONFLICTED, note=note)

    def fail(self, op_id: str, error: SyncErrorInfo) -> SyncOperation:
        return self._transition(
            op_id,
            OperationStatus.FAILED,
            error=error,
            stored_version=error.stored_version,
        )

    def cancel(self, op_id: str, note: str | None = None) -> SyncOperation:
        return self._transition(op_id, OperationStatus.CANCELLED, note=note)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, op_id: str) -> SyncOperation:
        try:
            return self._operations[op_id]
        except KeyError:
            raise KeyError(f"Unknown sync operation: {op_id}") from None

    def recent_operations(self, limit: int = 50) -> list[SyncOperation]:
        """Most recently created operations, newest first."""
        return list(reversed(self._operations.values()))[:limit]

    def active_operations(self) -> list[SyncOperation]:
        return [
            op for op in self._operations.values() if not op.status.is_terminal
        ]

    def operations_for(self, logical_id: str) -> list[SyncOperation]:
        return [
            op for op in self._operations.values() if op.logical_id == logical_id
        ]

    def statistics(self) -> SyncStatistics:
        counts = {status: 0 for status in OperationStatus}
        durations: list[float] = []
        last_sync_at: float | None = None
        for op in self._operations.values():
            counts[op.status] += 1
            if op.status is OperationStatus.SUCCEEDED:
                if op.duration is not None:
                    durations.append(op.duration)
                if op.finished_at is not None and (
                    last_sync_at is None or op.finished_at > last_sync_at
                ):
                    last_sync_at = op.finished_at

        return SyncStatistics(
            total=len(self._operations),
            queued=counts[OperationStatus.QUEUED],
            in_flight=counts[OperationStatus.RUNNING],
            succeeded=counts[OperationStatus.SUCCEEDED],
            conflicted=counts[OperationStatus.CONFLICTED],
            failed=counts[OperationStatus.FAILED],
            cancelled=counts[OperationStatus.CANCELLED],
            conflicts_detected=self._conflicts_detected,
            average_duration=(
                sum(durations) / len(durations) if durations else None
            ),
            last_sync_at=last_sync_at,
        )

    def reset(self) -> None:
        """Forget all operations and counters (subscribers are kept)."""
        self._operations.clear()
        self._conflicts_detected = 0

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _transition(
        self, op_id: str, status: OperationStatus, **updates
    ) -> SyncOperation:
        op = self.get(op_id)
        if status not in _ALLOWED.get(op.status, frozenset()):
            raise InvalidTransitionError(op_id, op.status.value, status.value)

        changes = {"status": status, **updates}
        if status.is_terminal:
            changes["stage"] = _TERMINAL_STAGE[status]
            changes["finished_at"] = self._clock()
            if op.started_at is None:
                changes["started_at"] = changes["finished_at"]
        updated = op.model_copy(update=changes)
        self._operations[op_id] = updated
        self._emit(updated, op.status, op.stage)
        if status.is_terminal:
            self._trim()
        return updated

    def _emit(
        self,
        op: SyncOperation,
        previous_status: OperationStatus | None,
        previous_stage: EngineStage | None,
    ) -> None:
        event = StatusEvent(
            operation=op,
            previous_status=previous_status,
            previous_stage=previous_stage,
            timestamp=self._clock(),
        )
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Status subscriber %r failed", handler)

    def _trim(self) -> None:
        if self.max_operations is None:
            return
        terminal = [
            op_id
            for op_id, op in self._operations.items()
            if op.status.is_terminal
        ]
        for op_id in terminal[: max(0, len(terminal) - self.max_operations)]:
            del self._operations[op_id]
