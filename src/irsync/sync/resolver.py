"""Conflict resolution strategies and the resolver that applies them.

Strategies decide what to do with a freshly detected conflict:

- ``PreferSideStrategy``: the configured side wins (``prefer-A`` /
  ``prefer-B``); the other side is regenerated from the winner's IR.
- ``ManualStrategy``: no decision; the record stays pending until a caller
  supplies a ``Resolution`` via ``ConflictResolver.resolve()``.
- ``SkipStrategy``: leave both files untouched.

The ``create_strategy()`` factory maps config strategy strings to
strategy instances.

``ConflictResolver`` owns every ``ConflictRecord`` after detection: it is
the only component that changes a record's status or resolution, and it
persists each state to ``<conflict_root>/<id>.json`` when a root is set.
Resolution is idempotent: resolving a record that is no longer pending
returns the existing record unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Protocol

from irsync.errors import UnknownConflictError
from irsync.file_handler import write_json_atomic
from irsync.sync.models import (
    ConflictRecord,
    ConflictStatus,
    Resolution,
    ResolutionChoice,
    Side,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ResolutionStrategy(Protocol):
    """Protocol that all resolution strategies must satisfy."""

    name: str

    def decide(self, record: ConflictRecord) -> Resolution | None:
        """Determine the resolution for a conflict.

        Args:
            record: The pending conflict.

        Returns:
            A ``Resolution`` to apply immediately, or ``None`` to leave
            the record pending for an external decision.
        """
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class PreferSideStrategy:
    """Always pick the configured side."""

    def __init__(self, side: Side) -> None:
        self.side = side
        self.name = f"prefer-{side.value}"

    def decide(self, record: ConflictRecord) -> Resolution:
        logger.info(
            "Conflict %s on %s: side %s wins",
            record.id,
            record.logical_id,
            self.side.value,
        )
        choice = (
            ResolutionChoice.PREFER_A
            if self.side is Side.A
            else ResolutionChoice.PREFER_B
        )
        return Resolution(choice=choice, resolved_by=self.name)


class ManualStrategy:
    """Defer every conflict to an external caller."""

    name = "manual"

    def decide(self, record: ConflictRecord) -> None:
        logger.info(
            "Conflict %s on %s awaits manual resolution",
            record.id,
            record.logical_id,
        )
        return None


class SkipStrategy:
    """Leave both sides untouched."""

    name = "skip"

    def decide(self, record: ConflictRecord) -> Resolution:
        logger.info(
            "Conflict %s on %s skipped", record.id, record.logical_id
        )
        return Resolution(choice=ResolutionChoice.SKIP, resolved_by=self.name)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[str, Callable[[], ResolutionStrategy]] = {
    "prefer-A": lambda: PreferSideStrategy(Side.A),
    "prefer-B": lambda: PreferSideStrategy(Side.B),
    "manual": ManualStrategy,
    "skip": SkipStrategy,
}


def create_strategy(name: str) -> ResolutionStrategy:
    """Create a strategy instance from a config strategy string.

    Args:
        name: One of ``"prefer-A"``, ``"prefer-B"``, ``"manual"``,
            ``"skip"``.

    Returns:
        A strategy instance.

    Raises:
        ValueError: If *name* is not recognised.
    """
    factory = _STRATEGY_MAP.get(name)
    if factory is None:
        valid = ", ".join(sorted(_STRATEGY_MAP))
        raise ValueError(
            f"Unknown conflict strategy {name!r}. Valid strategies: {valid}"
        )
    return factory()


def coerce_resolution(value: Resolution | Side | str) -> Resolution:
    """Accept a ``Resolution``, a winning ``Side`` or a choice string."""
    if isinstance(value, Resolution):
        return value
    if isinstance(value, Side):
        choice = (
            ResolutionChoice.PREFER_A
            if value is Side.A
            else ResolutionChoice.PREFER_B
        )
        return Resolution(choice=choice)
    return Resolution(choice=ResolutionChoice(value))


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Register conflicts, apply the strategy, and accept manual decisions.

    All methods must be called from the event loop thread.

    Args:
        strategy: Strategy instance or config strategy string.
        conflict_root: Directory for persisted records (optional).
        clock: Time source, injectable for tests.
    """

    def __init__(
        self,
        strategy: ResolutionStrategy | str = "prefer-A",
        conflict_root: Path | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.strategy = (
            create_strategy(strategy) if isinstance(strategy, str) else strategy
        )
        self.conflict_root = Path(conflict_root) if conflict_root else None
        self._clock = clock
        self._records: dict[str, ConflictRecord] = {}
        self._events: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, conflict_id: str) -> ConflictRecord:
        try:
            return self._records[conflict_id]
        except KeyError:
            raise UnknownConflictError(conflict_id) from None

    def pending(self) -> list[ConflictRecord]:
        return [r for r in self._records.values() if r.is_open]

    def all(self) -> list[ConflictRecord]:
        return list(self._records.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def submit(self, record: ConflictRecord) -> ConflictRecord:
        """Register a newly detected record and apply the strategy.

        Returns:
            The record after the strategy ran (still pending for manual).
        """
        self._records[record.id] = record
        self._persist(record)
        decision = self.strategy.decide(record)
        if decision is None:
            return record
        return self._apply(record, decision)

    def resolve(
        self, conflict_id: str, resolution: Resolution | Side | str
    ) -> ConflictRecord:
        """Supply a decision for a pending record.

        Resolving a record that is no longer pending is a no-op that
        returns the existing record.

        Raises:
            UnknownConflictError: *conflict_id* was never registered.
        """
        record = self.get(conflict_id)
        if not record.is_open:
            logger.info(
                "Conflict %s already %s; ignoring new resolution",
                conflict_id,
                record.status.value,
            )
            return record
        return self._apply(record, coerce_resolution(resolution))

    async def wait_for_resolution(
        self, conflict_id: str, timeout: float | None = None
    ) -> ConflictRecord:
        """Suspend until *conflict_id* leaves the pending state.

        On timeout the record is marked ``failed`` and returned. A record
        dropped by ``reset()`` while waiting comes back as a ``failed`` copy.
        """
        record = self.get(conflict_id)
        if not record.is_open:
            return record
        event = self._events.setdefault(conflict_id, asyncio.Event())
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Conflict %s not resolved within %.1f s", conflict_id, timeout
            )
            return self.mark_failed(conflict_id)
        current = self._records.get(conflict_id)
        if current is None:
            logger.warning(
                "Conflict %s dropped by reset while pending", conflict_id
            )
            return record.model_copy(
                update={
                    "status": ConflictStatus.FAILED,
                    "resolved_at": self._clock(),
                }
            )
        return current

    def mark_failed(self, conflict_id: str) -> ConflictRecord:
        """Close a pending record without a resolution."""
        record = self.get(conflict_id)
        if not record.is_open:
            return record
        failed = record.model_copy(
            update={"status": ConflictStatus.FAILED, "resolved_at": self._clock()}
        )
        self._store(failed)
        return failed

    def reset(self) -> None:
        """Forget every record (persisted files are kept)."""
        for event in self._events.values():
            event.set()
        self._records.clear()
        self._events.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _apply(
        self, record: ConflictRecord, resolution: Resolution
    ) -> ConflictRecord:
        status = (
            ConflictStatus.SKIPPED
            if resolution.choice is ResolutionChoice.SKIP
            else ConflictStatus.RESOLVED
        )
        resolved = record.model_copy(
            update={
                "status": status,
                "resolution": resolution,
                "resolved_at": self._clock(),
            }
        )
        self._store(resolved)
        logger.info(
            "Conflict %s %s (%s)",
            record.id,
            status.value,
            resolution.choice.value,
        )
        return resolved

    def _store(self, record: ConflictRecord) -> None:
        self._records[record.id] = record
        self._persist(record)
        event = self._events.pop(record.id, None)
        if event is not None:
            event.set()

    def _persist(self, record: ConflictRecord) -> None:
        if self.conflict_root is None:
            return
        try:
            write_json_atomic(
                self.conflict_root / f"{record.id}.json",
                record.model_dump(mode="json"),
            )
        except OSError as exc:
            logger.error("Cannot persist conflict %s: %s", record.id, exc)
