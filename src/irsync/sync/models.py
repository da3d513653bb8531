"""Pydantic models for the bidirectional sync engine.

Defines the data contracts shared by the sync modules:

- ``Side``, ``ChangeType``, ``Priority``: change classification enums.
- ``QueuedChange``: one pending per-file change (mutable while queued).
- ``Resolution``, ``ConflictRecord``: a detected conflict and its outcome.
- ``OperationStatus``, ``EngineStage``, ``SyncErrorInfo``,
  ``SyncOperation``, ``StatusEvent``, ``SyncStatistics``: status tracking.
- ``ConflictNotification``: what notifier channels receive.
- ``SideCodec``: the converter/generator pair supplied for each side.

Timestamps are epoch seconds (``float``) so windows and durations can be
computed directly. Apart from ``QueuedChange`` all models are frozen.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, Mapping

from pydantic import BaseModel, Field, model_validator

from irsync.ir.models import IRDocument


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class Side(str, Enum):
    """Which source tree a change belongs to."""

    A = "A"
    B = "B"

    @property
    def opposite(self) -> Side:
        return Side.B if self is Side.A else Side.A


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class Priority(IntEnum):
    """Queue tier; lower values are dequeued first."""

    HIGH = 1
    NORMAL = 2
    LOW = 3


class QueuedChange(BaseModel):
    """A pending change to one file.

    Created by the file watcher, coalesced in place while still queued
    and consumed exactly once by the sync engine.

    Attributes:
        change_id: Stable identity, kept across coalescing.
        file_path: Absolute path of the changed file.
        side: Tree the file belongs to.
        priority: Queue tier.
        detected_at: Epoch seconds of the (latest) edit.
        content_snapshot: File content when the change was emitted.
        change_type: Added, modified or deleted.
        logical_id: Logical unit the file represents.
        base_version: IR store version when the engine accepted the change.
        source_identity: ``(mtime_ns, size)`` of the file taken just before
            the snapshot was read; used to match conversion cache entries.
    """

    change_id: str = Field(default_factory=lambda: _new_id("chg"))
    file_path: str
    side: Side
    priority: Priority = Priority.NORMAL
    detected_at: float = Field(default_factory=time.time)
    content_snapshot: str = ""
    change_type: ChangeType = ChangeType.MODIFIED
    logical_id: str
    base_version: int = 0
    source_identity: tuple[int, int] | None = None

    model_config = {"validate_assignment": True}


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class ConflictStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    SKIPPED = "skipped"
    FAILED = "failed"


class ResolutionChoice(str, Enum):
    PREFER_A = "prefer-A"
    PREFER_B = "prefer-B"
    MERGED = "merged"
    SKIP = "skip"


class Resolution(BaseModel):
    """Outcome chosen for a conflict.

    Attributes:
        choice: Winning side, a hand-merged document, or skip.
        ir: The hand-merged document; required when ``choice`` is merged.
        resolved_by: Free-form origin (strategy name or caller).
    """

    choice: ResolutionChoice
    ir: IRDocument | None = None
    resolved_by: str = "manual"

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _merged_requires_ir(self) -> Resolution:
        if self.choice is ResolutionChoice.MERGED and self.ir is None:
            raise ValueError("a merged resolution requires an ir document")
        return self

    @property
    def winner(self) -> Side | None:
        if self.choice is ResolutionChoice.PREFER_A:
            return Side.A
        if self.choice is ResolutionChoice.PREFER_B:
            return Side.B
        return None


class ConflictRecord(BaseModel):
    """Two concurrent edits to the same logical unit.

    Created by the conflict detector; only the resolver changes
    ``status``/``resolution`` (by replacing the record).
    """

    id: str = Field(default_factory=lambda: _new_id("conflict"))
    logical_id: str
    change_a: QueuedChange
    change_b: QueuedChange
    detected_at: float = Field(default_factory=time.time)
    status: ConflictStatus = ConflictStatus.PENDING
    resolution: Resolution | None = None
    resolved_at: float | None = None
    stored_version: int = 0

    model_config = {"frozen": True}

    def change_for(self, side: Side) -> QueuedChange:
        return self.change_a if side is Side.A else self.change_b

    @property
    def is_open(self) -> bool:
        return self.status is ConflictStatus.PENDING


class ConflictNotification(BaseModel):
    """Payload delivered to notifier channels."""

    conflict: ConflictRecord
    message: str
    timestamp: float = Field(default_factory=time.time)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Status tracking
# ---------------------------------------------------------------------------


class OperationStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    CONFLICTED = "conflicted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset(
    {
        OperationStatus.SUCCEEDED,
        OperationStatus.CONFLICTED,
        OperationStatus.FAILED,
        OperationStatus.CANCELLED,
    }
)


class EngineStage(str, Enum):
    """Fine-grained per-operation state machine of the sync engine."""

    QUEUED = "QUEUED"
    CONVERTING = "CONVERTING"
    CONFLICT_CHECK = "CONFLICT_CHECK"
    CONFLICTED = "CONFLICTED"
    VALIDATING = "VALIDATING"
    STORING = "STORING"
    GENERATING = "GENERATING"
    WRITING = "WRITING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SyncErrorInfo(BaseModel):
    """Structured error attached to a failed operation."""

    kind: str
    message: str
    stage: EngineStage | None = None
    retryable: bool = False
    stored_version: int | None = None

    model_config = {"frozen": True}


class SyncOperation(BaseModel):
    """Lifecycle record of one dequeued change.

    Terminal operations are never modified; a later attempt for the same
    logical unit gets a new ``id``.
    """

    id: str = Field(default_factory=lambda: _new_id("op"))
    logical_id: str
    side: Side
    file_path: str
    change_id: str | None = None
    status: OperationStatus = OperationStatus.QUEUED
    stage: EngineStage = EngineStage.QUEUED
    created_at: float = Field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    error: SyncErrorInfo | None = None
    conflict_id: str | None = None
    stored_version: int | None = None
    target_paths: list[str] = Field(default_factory=list)
    note: str | None = None

    model_config = {"frozen": True}

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class StatusEvent(BaseModel):
    """Emitted to subscribers on every status or stage change."""

    operation: SyncOperation
    previous_status: OperationStatus | None = None
    previous_stage: EngineStage | None = None
    timestamp: float = Field(default_factory=time.time)

    model_config = {"frozen": True}


class SyncStatistics(BaseModel):
    """Aggregate counters over all tracked operations."""

    total: int = 0
    queued: int = 0
    in_flight: int = 0
    succeeded: int = 0
    conflicted: int = 0
    failed: int = 0
    cancelled: int = 0
    conflicts_detected: int = 0
    average_duration: float | None = None
    last_sync_at: float | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Side collaborators
# ---------------------------------------------------------------------------

ConverterFunction = Callable[[str, str], "IRDocument | Mapping[str, Any]"]
GeneratorFunction = Callable[[IRDocument], str]


@dataclass(frozen=True)
class SideCodec:
    """Converter/generator pair for one side.

    Both functions must be pure. A raising ``convert`` is a parse failure;
    a raising ``generate`` is a generation failure.
    """

    convert: ConverterFunction
    generate: GeneratorFunction
    name: str = ""
