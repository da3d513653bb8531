"""IR data contracts.

``IRDocument`` is the framework-neutral tree for one logical UI unit; it is
the exchange format between the two source kinds. ``StoredEntry`` wraps a
document with the version and checksum assigned by the IR store.

Prop and state values form the ``PropValue`` tagged union; ``prop_kind()``
returns the tag so generators can ``match`` on it exhaustively.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, JsonValue

CURRENT_SCHEMA_VERSION = "1"

PropValue = JsonValue
"""string | number | bool | null | ordered map of PropValue | list of PropValue"""


class PropKind(str, Enum):
    """Tag of a ``PropValue``."""

    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    NULL = "null"
    MAP = "map"
    LIST = "list"


def prop_kind(value: Any) -> PropKind:
    """Return the ``PropKind`` tag for *value*.

    Raises:
        TypeError: If *value* is not a valid ``PropValue``.
    """
    match value:
        case None:
            return PropKind.NULL
        case bool():
            return PropKind.BOOL
        case int() | float():
            return PropKind.NUMBER
        case str():
            return PropKind.STRING
        case dict():
            return PropKind.MAP
        case list():
            return PropKind.LIST
    raise TypeError(f"Not a prop value: {type(value).__name__}")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class NodeMetadata(BaseModel):
    """Source provenance of one node."""

    line_number: int = 0
    doc: str | None = None

    model_config = {"frozen": True}


class IRNode(BaseModel):
    """One element of the UI tree.

    ``id`` is unique within its document. Ids are stable across re-parses
    of the same unit only on a best-effort basis.
    """

    id: str
    type: str
    props: dict[str, PropValue] = Field(default_factory=dict)
    children: list[IRNode] = Field(default_factory=list)
    state: dict[str, PropValue] | None = None
    events: dict[str, str] | None = None
    lifecycle_hooks: list[str] | None = None
    metadata: NodeMetadata = Field(default_factory=NodeMetadata)

    model_config = {"frozen": True}

    def walk(self):
        """Yield this node and every descendant, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()


class DocumentMetadata(BaseModel):
    """Where and when a document was produced."""

    source_kind: str = "unknown"
    source_file: str | None = None
    generated_at: str = Field(default_factory=_utc_now)

    model_config = {"frozen": True}


class IRDocument(BaseModel):
    """One logical UI unit in framework-neutral form."""

    schema_version: str = CURRENT_SCHEMA_VERSION
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    nodes: list[IRNode] = Field(default_factory=list)

    model_config = {"frozen": True}

    def walk(self):
        """Yield every node in the document, depth first."""
        for node in self.nodes:
            yield from node.walk()

    # ------------------------------------------------------------------
    # Canonical form
    # ------------------------------------------------------------------

    def canonical_dict(self) -> dict[str, Any]:
        """Content-only form used for checksums.

        Drops provenance (document metadata and node line numbers) so the
        same UI converted from either side hashes identically. Key order is
        insertion order, which keeps ``props`` ordering significant.
        """

        def _node(node: IRNode) -> dict[str, Any]:
            data: dict[str, Any] = {
                "id": node.id,
                "type": node.type,
                "props": node.props,
                "children": [_node(c) for c in node.children],
            }
            if node.state is not None:
                data["state"] = node.state
            if node.events is not None:
                data["events"] = node.events
            if node.lifecycle_hooks is not None:
                data["lifecycle_hooks"] = node.lifecycle_hooks
            if node.metadata.doc is not None:
                data["doc"] = node.metadata.doc
            return data

        return {
            "schema_version": self.schema_version,
            "nodes": [_node(n) for n in self.nodes],
        }

    def canonical_json(self) -> str:
        return json.dumps(
            self.canonical_dict(),
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def checksum(self) -> str:
        """SHA-256 hex digest of ``canonical_json()``."""
        return hashlib.sha256(
            self.canonical_json().encode("utf-8")
        ).hexdigest()


class StoredEntry(BaseModel):
    """A document as persisted by the IR store."""

    logical_id: str
    ir: IRDocument
    version: int = Field(ge=1)
    stored_at: str
    checksum: str

    model_config = {"frozen": True}
