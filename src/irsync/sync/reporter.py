"""Status and conflict formatting functions.

Provides human-readable and machine-readable output for sync status:

- ``format_operation`` -- one-line summary of a sync operation.
- ``format_status_summary`` -- aggregate counters plus recent failures.
- ``format_conflict_message`` -- short notification text for a conflict.
- ``format_conflict_diff`` -- unified diff of the two conflicting sources.
- ``operation_to_json`` / ``statistics_to_json`` / ``conflict_to_json``
  -- structured dicts for external consumers (webhooks, preview servers).
"""

from __future__ import annotations

import difflib
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable

from .models import OperationStatus

if TYPE_CHECKING:
    from .models import ConflictRecord, SyncOperation, SyncStatistics


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ------------------------------------------------------------------
# Human-readable output
# ------------------------------------------------------------------


def format_operation(op: SyncOperation) -> str:
    """Format one operation as ``[STATUS] side logical_id (stage) ...``."""
    line = (
        f"[{op.status.value.upper()}] {op.side.value} {op.logical_id} "
        f"({op.stage.value})"
    )
    if op.duration is not None:
        line += f" in {op.duration * 1000:.0f} ms"
    if op.stored_version is not None:
        line += f" v{op.stored_version}"
    if op.conflict_id:
        line += f" conflict={op.conflict_id}"
    if op.error is not None:
        line += f": {op.error.kind}: {op.error.message}"
    elif op.note:
        line += f": {op.note}"
    return line


def format_status_summary(
    stats: SyncStatistics,
    operations: Iterable[SyncOperation] = (),
) -> str:
    """Format aggregate statistics as human-readable text.

    Failed and conflicted operations from *operations* are listed below
    the summary line; succeeded ones are summarised by count only.

    Args:
        stats: Counters from ``SyncStatusTracker.statistics()``.
        operations: Optional operations to detail.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append(
        f"Sync status: {stats.total} operations, "
        f"{stats.succeeded} succeeded, {stats.failed} failed, "
        f"{stats.conflicted} conflicted, {stats.cancelled} cancelled, "
        f"{stats.in_flight} in flight"
    )
    if stats.average_duration is not None:
        lines.append(
            f"Average duration: {stats.average_duration * 1000:.0f} ms"
        )
    if stats.last_sync_at is not None:
        lines.append(f"Last sync: {_iso(stats.last_sync_at)}")
    if stats.conflicts_detected:
        lines.append(f"Conflicts detected: {stats.conflicts_detected}")

    attention = [
        op
        for op in operations
        if op.status in (OperationStatus.FAILED, OperationStatus.CONFLICTED)
    ]
    if attention:
        lines.append("")
        lines.append("Needs attention:")
        for op in attention:
            lines.append(f"  {format_operation(op)}")

    return "\n".join(lines)


def format_conflict_message(record: ConflictRecord) -> str:
    """One-line notification text for *record*."""
    gap = abs(record.change_a.detected_at - record.change_b.detected_at)
    return (
        f"Conflict {record.id} on '{record.logical_id}' "
        f"[{record.status.value}]: "
        f"{record.change_a.file_path} and {record.change_b.file_path} "
        f"changed {gap * 1000:.0f} ms apart"
    )


def format_conflict_diff(record: ConflictRecord) -> str:
    """Unified diff between the two conflicting source snapshots.

    The sources are different languages, so the diff is only a reading
    aid for manual resolution.
    """
    diff = difflib.unified_diff(
        record.change_a.content_snapshot.splitlines(keepends=True),
        record.change_b.content_snapshot.splitlines(keepends=True),
        fromfile=f"A: {record.change_a.file_path}",
        tofile=f"B: {record.change_b.file_path}",
    )
    text = "".join(diff).rstrip()
    return text or "(no textual differences)"


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def operation_to_json(op: SyncOperation) -> dict:
    """Structured dict for one operation."""
    entry: dict = {
        "id": op.id,
        "logical_id": op.logical_id,
        "side": op.side.value,
        "file_path": op.file_path,
        "status": op.status.value,
        "stage": op.stage.value,
        "started_at": _iso(op.started_at),
        "finished_at": _iso(op.finished_at),
        "target_paths": list(op.target_paths),
    }
    if op.stored_version is not None:
        entry["stored_version"] = op.stored_version
    if op.conflict_id:
        entry["conflict_id"] = op.conflict_id
    if op.error is not None:
        entry["error"] = op.error.model_dump(mode="json")
    if op.note:
        entry["note"] = op.note
    return entry


def statistics_to_json(stats: SyncStatistics) -> dict:
    return {
        "counts": {
            "total": stats.total,
            "queued": stats.queued,
            "in_flight": stats.in_flight,
            "succeeded": stats.succeeded,
            "conflicted": stats.conflicted,
            "failed": stats.failed,
            "cancelled": stats.cancelled,
        },
        "conflicts_detected": stats.conflicts_detected,
        "average_duration_ms": (
            None
            if stats.average_duration is None
            else round(stats.average_duration * 1000, 3)
        ),
        "last_sync_at": _iso(stats.last_sync_at),
    }


def conflict_to_json(record: ConflictRecord) -> dict:
    """Structured dict for a conflict, without the source snapshots."""
    entry: dict = {
        "id": record.id,
        "logical_id": record.logical_id,
        "status": record.status.value,
        "detected_at": _iso(record.detected_at),
        "files": {
            "A": record.change_a.file_path,
            "B": record.change_b.file_path,
        },
    }
    if record.resolution is not None:
        entry["resolution"] = record.resolution.choice.value
        entry["resolved_at"] = _iso(record.resolved_at)
    return entry
