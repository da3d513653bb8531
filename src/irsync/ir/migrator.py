"""Forward-only schema migration for IR documents.

Migrations form a linear chain: each registered step upgrades exactly one
``from_version`` to one ``to_version``. ``IRMigrator.migrate()`` walks the
chain from the document's version to the target, applying each step to a
deep copy and validating the final document.

The baseline ``"0" -> "1"`` step is registered by default. It turns a
possibly malformed raw mapping (hand-edited, or produced by an external
tool) into a well-formed document by filling in every missing field.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from irsync.errors import (
    CyclicMigrationError,
    MigrationStepError,
    NoMigrationPathError,
)
from irsync.ir.models import CURRENT_SCHEMA_VERSION, IRDocument
from irsync.ir.validator import StructuralValidator, Validator

logger = logging.getLogger(__name__)

MAX_MIGRATION_STEPS = 100
UNVERSIONED = "0"
UNKNOWN_NODE_TYPE = "Unknown"


@dataclass(frozen=True)
class Migration:
    """One registered upgrade step."""

    from_version: str
    to_version: str
    migrate: Callable[[dict[str, Any]], dict[str, Any]]
    description: str = ""


# ---------------------------------------------------------------------------
# Baseline migration
# ---------------------------------------------------------------------------


def generate_node_id() -> str:
    return f"node_{uuid.uuid4().hex[:12]}"


def _repair_node(raw: Any) -> dict[str, Any]:
    node = dict(raw) if isinstance(raw, Mapping) else {}

    if not isinstance(node.get("id"), str) or not node["id"]:
        node["id"] = generate_node_id()
    if not isinstance(node.get("type"), str) or not node["type"]:
        node["type"] = UNKNOWN_NODE_TYPE
    if not isinstance(node.get("props"), Mapping):
        node["props"] = {}

    children = node.get("children")
    node["children"] = (
        [_repair_node(c) for c in children] if isinstance(children, list) else []
    )

    metadata = node.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, Mapping) else {}
    if not isinstance(metadata.get("line_number"), int):
        metadata["line_number"] = 0
    node["metadata"] = metadata
    return node


def normalize_raw_document(doc: dict[str, Any]) -> dict[str, Any]:
    """Baseline ``0 -> 1`` migration.

    Fills in ``schema_version`` and ``metadata``, coerces non-list
    ``nodes`` to ``[]`` and repairs every node recursively: a missing
    ``id`` is generated, a missing ``type`` becomes ``"Unknown"`` and
    missing ``props``/``children``/``metadata`` get defaults.
    """
    result = dict(doc)
    result.setdefault("schema_version", UNVERSIONED)

    metadata = result.get("metadata")
    metadata = dict(metadata) if isinstance(metadata, Mapping) else {}
    metadata.setdefault("source_kind", "unknown")
    metadata.setdefault("source_file", None)
    metadata.setdefault(
        "generated_at", datetime.now(timezone.utc).isoformat()
    )
    result["metadata"] = metadata

    nodes = result.get("nodes")
    result["nodes"] = (
        [_repair_node(n) for n in nodes] if isinstance(nodes, list) else []
    )
    return result


BASELINE_MIGRATION = Migration(
    from_version=UNVERSIONED,
    to_version="1",
    migrate=normalize_raw_document,
    description="Normalize unversioned raw documents",
)


# ---------------------------------------------------------------------------
# Migrator
# ---------------------------------------------------------------------------


def document_version(doc: IRDocument | Mapping[str, Any]) -> str:
    """Schema version of *doc*; unversioned raw mappings report ``"0"``."""
    if isinstance(doc, IRDocument):
        return doc.schema_version
    version = doc.get("schema_version")
    return str(version) if version not in (None, "") else UNVERSIONED


class IRMigrator:
    """Registry of migration steps plus the linear path walk.

    Args:
        validator: Checks the final document. Defaults to
            ``StructuralValidator``.
        current_version: Version documents are migrated to by default.
        include_baseline: Register the ``0 -> 1`` normalization step.
    """

    def __init__(
        self,
        validator: Validator | None = None,
        current_version: str = CURRENT_SCHEMA_VERSION,
        include_baseline: bool = True,
    ) -> None:
        self._validator = validator or StructuralValidator()
        self.current_version = current_version
        self._steps: dict[str, Migration] = {}
        if include_baseline:
            self.register(BASELINE_MIGRATION)

    def register(self, migration: Migration) -> None:
        """Register *migration*, replacing any step with the same origin."""
        existing = self._steps.get(migration.from_version)
        if existing is not None:
            logger.warning(
                "Replacing migration %s -> %s with %s -> %s",
                existing.from_version,
                existing.to_version,
                migration.from_version,
                migration.to_version,
            )
        self._steps[migration.from_version] = migration

    def registered_versions(self) -> list[tuple[str, str]]:
        return [(m.from_version, m.to_version) for m in self._steps.values()]

    def needs_migration(
        self, doc: IRDocument | Mapping[str, Any], target_version: str | None = None
    ) -> bool:
        return document_version(doc) != (target_version or self.current_version)

    def get_migration_path(
        self, from_version: str, to_version: str
    ) -> list[Migration]:
        """Follow the chain from *from_version* to *to_version*.

        Raises:
            NoMigrationPathError: A version along the way has no step.
            CyclicMigrationError: More than ``MAX_MIGRATION_STEPS`` steps.
        """
        path: list[Migration] = []
        version = from_version
        while version != to_version:
            if len(path) >= MAX_MIGRATION_STEPS:
                raise CyclicMigrationError(
                    from_version, to_version, MAX_MIGRATION_STEPS
                )
            step = self._steps.get(version)
            if step is None:
                raise NoMigrationPathError(version, to_version)
            path.append(step)
            version = step.to_version
        return path

    def migrate(
        self,
        doc: IRDocument | Mapping[str, Any],
        target_version: str | None = None,
    ) -> IRDocument:
        """Upgrade *doc* to *target_version* and validate the result.

        A document already at the target is returned as a validated copy.

        Raises:
            NoMigrationPathError, CyclicMigrationError: No usable path.
            MigrationStepError: A step raised.
            IRValidationError: The migrated document is invalid.
        """
        target = target_version or self.current_version
        source = document_version(doc)
        path = self.get_migration_path(source, target)

        data = (
            doc.model_dump(mode="json")
            if isinstance(doc, IRDocument)
            else copy.deepcopy(dict(doc))
        )
        for step in path:
            try:
                data = step.migrate(copy.deepcopy(data))
            except Exception as exc:
                raise MigrationStepError(
                    step.from_version, step.to_version, str(exc)
                ) from exc
            data["schema_version"] = step.to_version

        if path:
            logger.debug(
                "Migrated document %s -> %s in %d step(s)",
                source,
                target,
                len(path),
            )
        return self._validator.validate_or_throw(data)
