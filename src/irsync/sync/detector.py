"""Conflict detection for concurrent edits.

Two changes to the same logical unit conflict when they come from opposite
sides, were detected within the conflict window of each other, and no
sync has completed since either of them was accepted (the store's current
version is not newer than either change's ``base_version``). A change
accepted *after* a sync is derived from the new IR and never conflicts
with the edit that produced it.

Conflict is defined purely by timing: two edits that happen to converge
on identical IR inside the window are still reported.
A window of 0 disables detection entirely.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from irsync.ir.store import IRStore
from irsync.sync.models import ConflictRecord, QueuedChange, Side

logger = logging.getLogger(__name__)


class ConflictDetector:
    """Track recent changes per side and report concurrent pairs.

    Args:
        store: IR store, consulted for the current version of a unit.
        window_ms: Maximum gap between edits counted as concurrent.
        clock: Time source for pruning, injectable for tests.
    """

    def __init__(
        self,
        store: IRStore,
        window_ms: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.window = window_ms / 1000
        self._clock = clock
        self._recent: dict[tuple[str, Side], QueuedChange] = {}
        # reported pair -> (logical id, newest detected_at of the pair)
        self._reported: dict[frozenset[str], tuple[str, float]] = {}
        self.conflicts_detected = 0

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def observe(self, change: QueuedChange) -> None:
        """Record *change* as the latest edit on its side."""
        self._recent[(change.logical_id, change.side)] = change.model_copy()
        self._prune()

    def forget(self, logical_id: str) -> None:
        """Drop recorded changes and reported pairs for *logical_id*."""
        for side in Side:
            self._recent.pop((logical_id, side), None)
        owned = [p for p, (lid, _) in self._reported.items() if lid == logical_id]
        for pair in owned:
            del self._reported[pair]

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def check(
        self,
        logical_id: str,
        incoming_side: Side,
        incoming_change: QueuedChange,
    ) -> ConflictRecord | None:
        """Return a new pending ``ConflictRecord`` or ``None``.

        Each pair of changes is reported at most once; repeated calls for
        the same pair return ``None``. The incoming change is recorded.
        """
        opposite = self._recent.get((logical_id, incoming_side.opposite))
        self._recent[(logical_id, incoming_side)] = incoming_change.model_copy()

        if self.window <= 0:
            return None
        if opposite is None or opposite.change_id == incoming_change.change_id:
            return None

        gap = abs(incoming_change.detected_at - opposite.detected_at)
        if gap > self.window:
            return None

        current = self._store.current_version(logical_id)
        if current > min(incoming_change.base_version, opposite.base_version):
            logger.debug(
                "Change on side %s for %s is derived from v%d, not a conflict",
                opposite.side.value,
                logical_id,
                current,
            )
            return None

        pair = frozenset((incoming_change.change_id, opposite.change_id))
        if pair in self._reported:
            return None
        self._reported[pair] = (
            logical_id,
            max(incoming_change.detected_at, opposite.detected_at),
        )

        if incoming_side is Side.A:
            change_a, change_b = incoming_change, opposite
        else:
            change_a, change_b = opposite, incoming_change

        record = ConflictRecord(
            logical_id=logical_id,
            change_a=change_a.model_copy(),
            change_b=change_b.model_copy(),
            detected_at=self._clock(),
            stored_version=current,
        )
        self.conflicts_detected += 1
        logger.warning(
            "Conflict %s on %s: edits %.0f ms apart (window %.0f ms)",
            record.id,
            logical_id,
            gap * 1000,
            self.window * 1000,
        )
        return record

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _prune(self) -> None:
        cutoff = self._clock() - 2 * self.window
        stale = [k for k, c in self._recent.items() if c.detected_at < cutoff]
        for key in stale:
            del self._recent[key]
        aged = [p for p, (_, at) in self._reported.items() if at < cutoff]
        for pair in aged:
            del self._reported[pair]
