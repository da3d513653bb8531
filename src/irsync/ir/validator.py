"""Structural validation of IR documents.

The engine accepts any object satisfying the ``Validator`` protocol;
``StructuralValidator`` is the default. It checks what every generator
relies on: the document parses into the IR models, every reachable node
has a non-empty ``id`` and ``type``, ``children`` is a list, and ids are
unique within the document.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from irsync.errors import IRValidationError
from irsync.ir.models import IRDocument


class ValidationIssue(BaseModel):
    """One problem found in a document.

    Attributes:
        path: Dotted/indexed location, e.g. ``nodes[0].children[2].id``.
        message: Human-readable description.
    """

    path: str
    message: str

    model_config = {"frozen": True}


class ValidationResult(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)

    model_config = {"frozen": True}


class Validator(Protocol):
    """Protocol that IR validators must satisfy."""

    def validate(self, doc: IRDocument | Mapping[str, Any]) -> ValidationResult:
        """Check *doc* and report every problem found."""
        ...  # pragma: no cover

    def validate_or_throw(
        self, doc: IRDocument | Mapping[str, Any]
    ) -> IRDocument:
        """Return *doc* as an ``IRDocument`` or raise ``IRValidationError``."""
        ...  # pragma: no cover


def _loc_to_path(loc: tuple) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "$"


class StructuralValidator:
    """Default validator: model parsing plus recursive node invariants."""

    def validate(self, doc: IRDocument | Mapping[str, Any]) -> ValidationResult:
        issues: list[ValidationIssue] = []

        if isinstance(doc, IRDocument):
            parsed = doc
        else:
            try:
                parsed = IRDocument.model_validate(doc)
            except ValidationError as exc:
                for err in exc.errors():
                    issues.append(
                        ValidationIssue(
                            path=_loc_to_path(tuple(err["loc"])),
                            message=err["msg"],
                        )
                    )
                return ValidationResult(valid=False, errors=issues)

        if not parsed.schema_version:
            issues.append(
                ValidationIssue(
                    path="schema_version", message="must not be empty"
                )
            )

        seen: dict[str, str] = {}
        for index, node in enumerate(parsed.nodes):
            self._check_node(node, f"nodes[{index}]", seen, issues)

        return ValidationResult(valid=not issues, errors=issues)

    def validate_or_throw(
        self, doc: IRDocument | Mapping[str, Any]
    ) -> IRDocument:
        result = self.validate(doc)
        if not result.valid:
            summary = "; ".join(
                f"{i.path}: {i.message}" for i in result.errors[:5]
            )
            if len(result.errors) > 5:
                summary += f"; ... ({len(result.errors)} issues)"
            raise IRValidationError(
                f"Invalid IR document: {summary}", result.errors
            )
        if isinstance(doc, IRDocument):
            return doc
        return IRDocument.model_validate(doc)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_node(
        self,
        node,
        path: str,
        seen: dict[str, str],
        issues: list[ValidationIssue],
    ) -> None:
        if not node.id.strip():
            issues.append(
                ValidationIssue(path=f"{path}.id", message="must not be empty")
            )
        elif node.id in seen:
            issues.append(
                ValidationIssue(
                    path=f"{path}.id",
                    message=f"duplicate id {node.id!r} (first at {seen[node.id]})",
                )
            )
        else:
            seen[node.id] = path

        if not node.type.strip():
            issues.append(
                ValidationIssue(
                    path=f"{path}.type", message="must not be empty"
                )
            )
        if node.metadata.line_number < 0:
            issues.append(
                ValidationIssue(
                    path=f"{path}.metadata.line_number",
                    message="must be >= 0",
                )
            )

        for index, child in enumerate(node.children):
            self._check_node(child, f"{path}.children[{index}]", seen, issues)
