"""Intermediate representation: models, validation, migration, storage.

Modules:

- ``models``    -- ``IRDocument``, ``IRNode``, ``StoredEntry`` and the
  ``PropValue`` tagged union.
- ``validator`` -- ``Validator`` protocol and ``StructuralValidator``.
- ``migrator``  -- ``IRMigrator``: linear forward-only schema migrations.
- ``store``     -- ``IRStore``: versioned, checksummed on-disk entries.
"""

from .migrator import IRMigrator, Migration
from .models import (
    CURRENT_SCHEMA_VERSION,
    DocumentMetadata,
    IRDocument,
    IRNode,
    NodeMetadata,
    PropKind,
    StoredEntry,
    prop_kind,
)
from .store import IRStore
from .validator import (
    StructuralValidator,
    ValidationIssue,
    ValidationResult,
    Validator,
)

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "DocumentMetadata",
    "IRDocument",
    "IRMigrator",
    "IRNode",
    "IRStore",
    "Migration",
    "NodeMetadata",
    "PropKind",
    "StoredEntry",
    "StructuralValidator",
    "ValidationIssue",
    "ValidationResult",
    "Validator",
    "prop_kind",
]
