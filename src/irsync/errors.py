"""Exception taxonomy for irsync.

Every error raised by the store, migrator and sync engine derives from
``IRSyncError`` and carries two class attributes the engine uses when
recording a failed operation:

- ``kind``: short, stable identifier reported in ``SyncErrorInfo``.
- ``retryable``: whether the engine may retry the failing stage.

Conflicts are *not* exceptions; they are a state handled by the resolver.
"""

from __future__ import annotations


class IRSyncError(Exception):
    """Base class for all irsync errors."""

    kind = "internal"
    retryable = False


class ParseError(IRSyncError):
    """A side converter raised while turning source text into IR."""

    kind = "parse"

    def __init__(self, file_path: str, message: str) -> None:
        super().__init__(f"Failed to parse {file_path}: {message}")
        self.file_path = file_path


class IRValidationError(IRSyncError):
    """An IR document failed structural validation.

    Attributes:
        issues: ``ValidationIssue`` objects describing each problem.
    """

    kind = "validation"

    def __init__(self, message: str, issues: list | None = None) -> None:
        super().__init__(message)
        self.issues = list(issues or [])


class MigrationPathError(IRSyncError):
    """Base class for schema migration failures."""

    kind = "migration"


class NoMigrationPathError(MigrationPathError):
    """No registered migration leads from one version to the next."""

    def __init__(self, from_version: str, to_version: str) -> None:
        super().__init__(
            f"No migration path from version {from_version} to {to_version}"
        )
        self.from_version = from_version
        self.to_version = to_version


class CyclicMigrationError(MigrationPathError):
    """The migration walk exceeded the step bound."""

    def __init__(self, from_version: str, to_version: str, steps: int) -> None:
        super().__init__(
            f"Migration path from {from_version} to {to_version} exceeded "
            f"{steps} steps (cycle in registered migrations?)"
        )
        self.from_version = from_version
        self.to_version = to_version


class MigrationStepError(MigrationPathError):
    """A single migration step raised."""

    def __init__(self, from_version: str, to_version: str, message: str) -> None:
        super().__init__(
            f"Migration {from_version} -> {to_version} failed: {message}"
        )
        self.from_version = from_version
        self.to_version = to_version


class SyncIOError(IRSyncError):
    """Reading or writing a file failed after all retry attempts."""

    kind = "io"
    retryable = True

    def __init__(self, path: str, message: str, attempts: int = 1) -> None:
        super().__init__(
            f"I/O failure on {path} after {attempts} attempt(s): {message}"
        )
        self.path = path
        self.attempts = attempts


class GenerationError(IRSyncError):
    """A side generator raised while rendering IR to source text.

    ``stored_version`` is set when the IR update had already been stored,
    so the divergence between the two sides is visible to callers.
    """

    kind = "generation"

    def __init__(
        self,
        logical_id: str,
        message: str,
        stored_version: int | None = None,
    ) -> None:
        super().__init__(f"Failed to generate {logical_id}: {message}")
        self.logical_id = logical_id
        self.stored_version = stored_version


class UnknownConflictError(IRSyncError):
    """A resolution was supplied for a conflict id that does not exist."""

    kind = "conflict"

    def __init__(self, conflict_id: str) -> None:
        super().__init__(f"Unknown conflict: {conflict_id}")
        self.conflict_id = conflict_id


class InvalidTransitionError(IRSyncError):
    """A sync operation was moved to a status it cannot reach."""

    kind = "status"

    def __init__(self, operation_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Operation {operation_id} cannot move from {current} to {target}"
        )
        self.operation_id = operation_id
        self.current = current
        self.target = target
