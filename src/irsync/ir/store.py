"""Versioned on-disk persistence of IR documents.

Layout under the store root::

    <root>/<logical_id>.json                   current entry
    <root>/history/<logical_id>/v<N>.json      archived versions

Key design choices:

* **Monotonic versions** -- every ``store()`` writes ``version + 1`` and
  archives the previous current entry first, so history has no gaps.
* **Atomic writes** -- entries are written to a temp file then moved into
  place with ``os.replace()``.
* **Validate both ways** -- documents are validated before they are
  written and again when they are read back; a corrupt file reads as
  ``None`` plus a logged error rather than an exception.
* **Unreadable current entry** -- the next version continues from the
  newest archived version and the unreadable file is kept beside the
  store as ``<logical_id>.json.corrupt``; history is never overwritten.
* **Caller-gated idempotence** -- ``store()`` always bumps the version;
  callers use ``has_changed()`` to skip redundant stores.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError

from irsync.errors import IRValidationError
from irsync.file_handler import write_json_atomic
from irsync.ir.migrator import IRMigrator, document_version
from irsync.ir.models import IRDocument, StoredEntry
from irsync.ir.validator import StructuralValidator, Validator

logger = logging.getLogger(__name__)

_HISTORY_DIR = "history"
_VERSION_FILE = re.compile(r"^v(\d+)\.json$")


class IRStore:
    """Load, store and query versioned IR entries.

    Args:
        root: Store root directory (created on first write).
        validator: Validator applied on store and retrieve.
        migrator: When given, entries whose schema version differs from
            ``migrator.current_version`` are migrated on retrieve.
    """

    def __init__(
        self,
        root: Path,
        validator: Validator | None = None,
        migrator: IRMigrator | None = None,
    ) -> None:
        self.root = Path(root)
        self._validator = validator or StructuralValidator()
        self._migrator = migrator

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(self, logical_id: str, ir: IRDocument) -> StoredEntry:
        """Persist *ir* as the next version of *logical_id*.

        Args:
            logical_id: Logical unit identifier.
            ir: Document to store.

        Returns:
            The new current ``StoredEntry``.

        Raises:
            IRValidationError: *ir* is invalid; nothing is written.
            OSError: The archive or current file could not be written.
        """
        ir = self._validator.validate_or_throw(ir)
        current_path = self._current_path(logical_id)
        current = self._read_raw(current_path)
        version = _entry_version(current)

        if version > 0:
            archive = self._history_path(logical_id, version)
            write_json_atomic(archive, current)
        else:
            version = self._latest_history_version(logical_id)
            if current_path.exists():
                quarantine = current_path.with_name(
                    current_path.name + ".corrupt"
                )
                current_path.replace(quarantine)
                logger.warning(
                    "Current entry for %s is unreadable; moved to %s and "
                    "continuing from archived v%d",
                    logical_id,
                    quarantine,
                    version,
                )

        entry = StoredEntry(
            logical_id=logical_id,
            ir=ir,
            version=version + 1,
            stored_at=datetime.now(timezone.utc).isoformat(),
            checksum=ir.checksum(),
        )
        write_json_atomic(
            self._current_path(logical_id), entry.model_dump(mode="json")
        )
        logger.debug(
            "Stored %s v%d (%s)",
            logical_id,
            entry.version,
            entry.checksum[:12],
        )
        return entry

    def delete(self, logical_id: str) -> bool:
        """Remove the current entry and all history for *logical_id*.

        Returns:
            ``True`` if anything was removed, ``False`` if nothing existed.
        """
        removed = False
        current = self._current_path(logical_id)
        try:
            current.unlink()
            removed = True
        except FileNotFoundError:
            pass

        history = self._history_dir(logical_id)
        if history.exists():
            shutil.rmtree(history)
            removed = True

        if removed:
            logger.info("Deleted stored IR for %s", logical_id)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def retrieve(
        self, logical_id: str, version: int | None = None
    ) -> StoredEntry | None:
        """Read the current entry, or a specific archived *version*.

        Returns:
            The entry, or ``None`` when it is absent, unreadable or invalid.

        Raises:
            MigrationPathError: The stored schema version cannot be
                migrated to the current one.
        """
        if version is None:
            path = self._current_path(logical_id)
        else:
            path = self._history_path(logical_id, version)
            if not path.exists():
                # the requested version may be the current one
                current = self.retrieve(logical_id)
                if current is not None and current.version == version:
                    return current
                return None
        return self._load_entry(path)

    def has_changed(self, logical_id: str, ir: IRDocument) -> bool:
        """``True`` unless the current entry has *ir*'s checksum."""
        current = self._read_raw(self._current_path(logical_id))
        if not current:
            return True
        return current.get("checksum") != ir.checksum()

    def current_version(self, logical_id: str) -> int:
        """Version of the current entry.

        When the current entry is unreadable this is the newest archived
        version, and ``0`` when there is no history either.
        """
        current = self._read_raw(self._current_path(logical_id))
        version = _entry_version(current)
        if version > 0:
            return version
        return self._latest_history_version(logical_id)

    def get_history(self, logical_id: str) -> list[StoredEntry]:
        """All readable archived entries, sorted by version ascending."""
        entries: list[StoredEntry] = []
        for number in self._history_versions(logical_id):
            entry = self._load_entry(self._history_path(logical_id, number))
            if entry is not None:
                entries.append(entry)
        return entries

    def list_ids(self) -> list[str]:
        """Logical ids with a current entry, sorted."""
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json") if p.is_file())

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _current_path(self, logical_id: str) -> Path:
        return self.root / f"{logical_id}.json"

    def _history_dir(self, logical_id: str) -> Path:
        return self.root / _HISTORY_DIR / logical_id

    def _history_path(self, logical_id: str, version: int) -> Path:
        return self._history_dir(logical_id) / f"v{version}.json"

    def _history_versions(self, logical_id: str) -> list[int]:
        history = self._history_dir(logical_id)
        if not history.is_dir():
            return []
        versions = []
        for child in history.iterdir():
            match = _VERSION_FILE.match(child.name)
            if match:
                versions.append(int(match.group(1)))
        return sorted(versions)

    def _latest_history_version(self, logical_id: str) -> int:
        versions = self._history_versions(logical_id)
        return versions[-1] if versions else 0

    def _read_raw(self, path: Path) -> dict | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Unreadable IR entry %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            logger.error("IR entry %s is not a JSON object", path)
            return None
        return data

    def _load_entry(self, path: Path) -> StoredEntry | None:
        raw = self._read_raw(path)
        if raw is None:
            return None

        ir_data = raw.get("ir")
        if not isinstance(ir_data, dict):
            logger.error("IR entry %s has no document", path)
            return None

        if self._migrator is not None and self._migrator.needs_migration(
            ir_data
        ):
            logger.info(
                "Migrating %s from schema %s",
                path,
                document_version(ir_data),
            )
            try:
                migrated = self._migrator.migrate(ir_data)
            except IRValidationError as exc:
                logger.error(
                    "Invalid IR entry %s after migration: %s", path, exc
                )
                return None
            raw = {**raw, "ir": migrated}

        try:
            entry = StoredEntry.model_validate(raw)
            self._validator.validate_or_throw(entry.ir)
        except (ValidationError, IRValidationError) as exc:
            logger.error("Invalid IR entry %s: %s", path, exc)
            return None
        return entry


def _entry_version(raw: dict | None) -> int:
    if not raw:
        return 0
    try:
        return max(int(raw.get("version", 0)), 0)
    except (TypeError, ValueError):
        return 0
