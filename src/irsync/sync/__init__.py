"""Bidirectional sync between two source trees.

Public API for keeping a component tree (side A) and a widget tree
(side B) in sync through a versioned intermediate representation.

Architecture
------------
Each side is converted to IR, the IR is validated and stored, and the
opposite side is regenerated from it. Files are never compared to each
other directly. Concurrent edits to the same logical unit are detected
by timing and routed to a configurable resolution strategy.

Modules:

- ``bidirectional`` -- ``BidirectionalSync``: wires watchers and engine.
- ``engine``    -- ``SyncEngine``: per-change operation state machine.
- ``watcher``   -- ``FileWatcher``, ``SuppressionTable``: debounced
  events without self-write echoes.
- ``queue``     -- ``ChangeQueue``: coalescing priority queue.
- ``detector``  -- ``ConflictDetector``: concurrent-edit detection.
- ``resolver``  -- Conflict resolution strategies (prefer-A, prefer-B,
  manual, skip).
- ``notifier``  -- Conflict notification channels.
- ``status``    -- ``SyncStatusTracker``: operation lifecycle and stats.
- ``mapper``    -- ``PathMapper``: logical ids and counterpart paths.
- ``models``    -- Core data contracts.
- ``reporter``  -- Human-readable and JSON formatting.

Usage example
-------------
::

    from irsync.config_loader import load_config
    from irsync.sync import BidirectionalSync, SideCodec

    config = load_config()
    sync = BidirectionalSync(
        config,
        codec_a=SideCodec(convert=tsx_to_ir, generate=ir_to_tsx, name="tsx"),
        codec_b=SideCodec(convert=dart_to_ir, generate=ir_to_dart, name="dart"),
    )
    await sync.start()
    ...
    await sync.stop()
"""

from .bidirectional import BidirectionalSync
from .engine import SyncEngine, error_info
from .mapper import PathMapper
from .models import (
    ChangeType,
    ConflictRecord,
    ConflictStatus,
    EngineStage,
    OperationStatus,
    Priority,
    QueuedChange,
    Resolution,
    ResolutionChoice,
    Side,
    SideCodec,
    SyncErrorInfo,
    SyncOperation,
    SyncStatistics,
)
from .reporter import (
    format_conflict_message,
    format_operation,
    format_status_summary,
    operation_to_json,
    statistics_to_json,
)

__all__ = [
    "BidirectionalSync",
    "ChangeType",
    "ConflictRecord",
    "ConflictStatus",
    "EngineStage",
    "OperationStatus",
    "PathMapper",
    "Priority",
    "QueuedChange",
    "Resolution",
    "ResolutionChoice",
    "Side",
    "SideCodec",
    "SyncEngine",
    "SyncErrorInfo",
    "SyncOperation",
    "SyncStatistics",
    "error_info",
    "format_conflict_message",
    "format_operation",
    "format_status_summary",
    "operation_to_json",
    "statistics_to_json",
]
