"""Shared pytest fixtures for irsync tests.

The fake codecs stand in for real TSX/Dart converters: a "source file" is
the JSON form of an IR document, optionally preceded by ``//`` comment
lines, and each generator writes such a file with a side-specific
header.
"""

from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from irsync.config_schema import SyncConfig, WatchConfig
from irsync.ir.models import IRDocument, IRNode
from irsync.sync.mapper import PathMapper
from irsync.sync.models import ChangeType, QueuedChange, Side, SideCodec


# ---------------------------------------------------------------------------
# IR helpers
# ---------------------------------------------------------------------------


def make_ir(*types: str, prefix: str = "n") -> IRDocument:
    """Build a flat document with one node per type."""
    return IRDocument(
        nodes=[
            IRNode(id=f"{prefix}{i}", type=t, props={"label": t.lower()})
            for i, t in enumerate(types)
        ]
    )


def source_text(doc: IRDocument, header: str = "") -> str:
    """Render *doc* the way the fake converters expect to read it."""
    body = json.dumps(doc.canonical_dict(), indent=2)
    return f"// {header}\n{body}\n" if header else body + "\n"


def fake_convert(text: str, path: str):
    lines = [ln for ln in text.splitlines() if not ln.startswith("//")]
    return json.loads("\n".join(lines))


def _generator(side: Side):
    def generate(ir: IRDocument) -> str:
        return source_text(ir, header=f"generated for side {side.value}")

    return generate


def make_codec(side: Side, convert=fake_convert, generate=None) -> SideCodec:
    return SideCodec(
        convert=convert,
        generate=generate or _generator(side),
        name=f"fake-{side.value}",
    )


def make_change(
    path: Path,
    side: Side,
    mapper: PathMapper,
    content: str = "",
    detected_at: float | None = None,
    change_type: ChangeType = ChangeType.MODIFIED,
) -> QueuedChange:
    return QueuedChange(
        file_path=str(path),
        side=side,
        detected_at=time.time() if detected_at is None else detected_at,
        content_snapshot=content,
        change_type=change_type,
        logical_id=mapper.logical_id(side, path),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def roots(tmp_path):
    """Side A and side B roots under a temporary directory."""
    side_a = tmp_path / "web"
    side_b = tmp_path / "app"
    side_a.mkdir()
    side_b.mkdir()
    return side_a, side_b


@pytest.fixture
def watch_config(roots):
    side_a, side_b = roots
    return WatchConfig(side_a_root=str(side_a), side_b_root=str(side_b))


@pytest.fixture
def mapper(watch_config):
    return PathMapper(watch_config)


@pytest.fixture
def sync_config(tmp_path, roots):
    """Full config with fast timings for engine and façade tests."""
    side_a, side_b = roots
    return SyncConfig(
        watch={
            "side_a_root": str(side_a),
            "side_b_root": str(side_b),
            "debounce_ms": 10,
            "suppression_ms": 500,
        },
        conflict={"conflict_dir": str(tmp_path / "conflicts")},
        retry={"attempts": 3, "backoff_ms": 0},
        engine={"store_dir": str(tmp_path / "store"), "worker_pool_size": 2},
    )


@pytest.fixture
def codecs():
    return {Side.A: make_codec(Side.A), Side.B: make_codec(Side.B)}
