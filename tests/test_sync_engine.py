"""Tests for SyncEngine: pipeline stages, failures, conflicts and deletes."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from irsync.config_schema import RetryConfig
from irsync.errors import GenerationError, ParseError
from irsync.ir.migrator import IRMigrator
from irsync.ir.models import IRDocument, IRNode
from irsync.ir.store import IRStore
from irsync.sync.detector import ConflictDetector
from irsync.sync.engine import SyncEngine, error_info
from irsync.sync.models import (
    ChangeType,
    ConflictStatus,
    EngineStage,
    OperationStatus,
    Resolution,
    ResolutionChoice,
    Side,
)
from irsync.sync.notifier import CallbackChannel, ConflictNotifier
from irsync.sync.resolver import ConflictResolver
from irsync.sync.watcher import SuppressionTable

from conftest import fake_convert, make_change, make_codec, make_ir, source_text

LOGICAL_ID = "screens-home-screen"


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def store(tmp_path):
    return IRStore(tmp_path / "store", migrator=IRMigrator())


@pytest.fixture
def paths(roots):
    side_a, side_b = roots
    (side_a / "screens").mkdir()
    (side_b / "screens").mkdir()
    return side_a / "screens" / "HomeScreen.tsx", side_b / "screens" / "home_screen.dart"


@pytest.fixture
def callbacks():
    return CallbackChannel()


@pytest.fixture
def make_engine(store, mapper, codecs, callbacks):
    """Factory building an engine with fast retries and an injected clock."""

    def _make(strategy="prefer-A", codecs=codecs, **kwargs):
        kwargs.setdefault("retry", RetryConfig(attempts=3, backoff_ms=0))
        kwargs.setdefault(
            "detector", ConflictDetector(store, window_ms=1000, clock=FakeClock(100.5))
        )
        return SyncEngine(
            codecs,
            store,
            mapper,
            resolver=ConflictResolver(strategy),
            notifier=ConflictNotifier([callbacks]),
            suppression=SuppressionTable(window_ms=1000),
            **kwargs,
        )

    return _make


def _write_source(path, doc, header=""):
    text = source_text(doc, header)
    path.write_text(text)
    return text


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSync:
    """A change on one side regenerates the other."""

    async def test_a_to_b(self, make_engine, mapper, paths, store):
        path_a, path_b = paths
        doc = make_ir("Column", "Text")
        text = _write_source(path_a, doc)
        engine = make_engine()

        op = await engine.process_change(make_change(path_a, Side.A, mapper, text))

        assert op.status is OperationStatus.SUCCEEDED
        assert op.stored_version == 1
        assert op.target_paths == [str(path_b.resolve())]
        assert store.retrieve(LOGICAL_ID).ir.checksum() == doc.checksum()
        assert path_b.read_text() == source_text(doc, "generated for side B")

    async def test_b_to_a(self, make_engine, mapper, paths):
        path_a, path_b = paths
        doc = make_ir("Scaffold")
        text = _write_source(path_b, doc)
        op = await make_engine().process_change(make_change(path_b, Side.B, mapper, text))
        assert op.status is OperationStatus.SUCCEEDED
        assert path_a.read_text() == source_text(doc, "generated for side A")

    async def test_raw_output_is_migrated(self, make_engine, mapper, paths, store):
        """Unversioned converter output goes through the baseline migration."""
        path_a, _ = paths
        text = '{"nodes": [{"type": "Button"}]}'
        path_a.write_text(text)
        op = await make_engine().process_change(make_change(path_a, Side.A, mapper, text))
        assert op.status is OperationStatus.SUCCEEDED
        stored = store.retrieve(LOGICAL_ID).ir
        assert stored.nodes[0].type == "Button"
        assert stored.nodes[0].id.startswith("node_")

    async def test_unchanged_ir_skips_write(self, make_engine, mapper, paths, store):
        path_a, path_b = paths
        text = _write_source(path_a, make_ir("Text"))
        engine = make_engine()
        await engine.process_change(make_change(path_a, Side.A, mapper, text))
        path_b.write_text("hand edit")

        op = await engine.process_change(make_change(path_a, Side.A, mapper, text))

        assert op.status is OperationStatus.SUCCEEDED
        assert op.note == "IR unchanged"
        assert store.current_version(LOGICAL_ID) == 1
        assert path_b.read_text() == "hand edit"

    async def test_generated_file_is_suppressed(self, make_engine, mapper, paths):
        path_a, path_b = paths
        text = _write_source(path_a, make_ir("Text"))
        engine = make_engine()
        await engine.process_change(make_change(path_a, Side.A, mapper, text))
        assert engine._suppression.is_suppressed(path_b)
        assert not engine._suppression.is_suppressed(path_a)

    async def test_stage_sequence(self, make_engine, mapper, paths):
        path_a, _ = paths
        text = _write_source(path_a, make_ir("Text"))
        engine = make_engine()
        stages = []
        engine.tracker.on_status_change(lambda e: stages.append(e.operation.stage))

        await engine.process_change(make_change(path_a, Side.A, mapper, text))

        assert stages == [
            EngineStage.QUEUED,
            EngineStage.CONVERTING,
            EngineStage.CONFLICT_CHECK,
            EngineStage.VALIDATING,
            EngineStage.STORING,
            EngineStage.GENERATING,
            EngineStage.WRITING,
            EngineStage.SUCCEEDED,
        ]

    async def test_missing_codec(self, store, mapper, codecs):
        with pytest.raises(ValueError, match="B"):
            SyncEngine({Side.A: codecs[Side.A]}, store, mapper)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    """Bad input never reaches the opposite side."""

    async def test_parse_failure(self, make_engine, mapper, paths, store):
        path_a, path_b = paths
        path_a.write_text("export default () => <View")
        op = await make_engine().process_change(
            make_change(path_a, Side.A, mapper, path_a.read_text())
        )
        assert op.status is OperationStatus.FAILED
        assert op.error.kind == "parse"
        assert op.error.stage is EngineStage.CONVERTING
        assert store.current_version(LOGICAL_ID) == 0
        assert not path_b.exists()

    async def test_validation_failure(self, make_engine, mapper, paths, store):
        path_a, path_b = paths
        doc = IRDocument(nodes=[IRNode(id="x", type="T"), IRNode(id="x", type="T")])
        text = _write_source(path_a, doc)
        op = await make_engine().process_change(make_change(path_a, Side.A, mapper, text))
        assert op.status is OperationStatus.FAILED
        assert op.error.kind == "validation"
        assert op.error.stage is EngineStage.VALIDATING
        assert store.current_version(LOGICAL_ID) == 0
        assert not path_b.exists()

    async def test_generation_failure_keeps_stored_ir(
        self, make_engine, mapper, paths, store
    ):
        path_a, path_b = paths

        def _broken(ir):
            raise RuntimeError("unsupported node type")

        codecs = {Side.A: make_codec(Side.A), Side.B: make_codec(Side.B, generate=_broken)}
        text = _write_source(path_a, make_ir("Text"))
        op = await make_engine(codecs=codecs).process_change(
            make_change(path_a, Side.A, mapper, text)
        )
        assert op.status is OperationStatus.FAILED
        assert op.error.kind == "generation"
        assert op.error.stored_version == 1
        assert op.stored_version == 1
        assert store.current_version(LOGICAL_ID) == 1
        assert not path_b.exists()

    async def test_resync_heals_failed_generation(
        self, make_engine, mapper, paths, store
    ):
        path_a, path_b = paths
        broken = [True]

        def _sometimes_broken(ir):
            if broken[0]:
                raise RuntimeError("unsupported node type")
            return source_text(ir, "generated for side B")

        codecs = {
            Side.A: make_codec(Side.A),
            Side.B: make_codec(Side.B, generate=_sometimes_broken),
        }
        engine = make_engine(codecs=codecs)
        doc = make_ir("Text")
        text = _write_source(path_a, doc)
        first = await engine.process_change(make_change(path_a, Side.A, mapper, text))
        assert first.error.kind == "generation"

        broken[0] = False
        op = await engine.process_change(make_change(path_a, Side.A, mapper, text))

        assert op.status is OperationStatus.SUCCEEDED
        assert op.note == "regenerated stale counterpart"
        assert op.stored_version == 1
        assert store.current_version(LOGICAL_ID) == 1
        assert path_b.read_text() == source_text(doc, "generated for side B")

    async def test_resync_heals_counterpart_behind(
        self, make_engine, mapper, paths, store
    ):
        path_a, path_b = paths
        broken = [False]

        def _sometimes_broken(ir):
            if broken[0]:
                raise RuntimeError("unsupported node type")
            return source_text(ir, "generated for side B")

        codecs = {
            Side.A: make_codec(Side.A),
            Side.B: make_codec(Side.B, generate=_sometimes_broken),
        }
        engine = make_engine(codecs=codecs)
        text = _write_source(path_a, make_ir("Text"))
        await engine.process_change(make_change(path_a, Side.A, mapper, text))

        broken[0] = True
        updated = make_ir("Text", "Image")
        text = _write_source(path_a, updated)
        failed = await engine.process_change(make_change(path_a, Side.A, mapper, text))
        assert failed.error.stored_version == 2
        assert path_b.read_text() == source_text(make_ir("Text"), "generated for side B")

        broken[0] = False
        op = await engine.process_change(make_change(path_a, Side.A, mapper, text))

        assert op.status is OperationStatus.SUCCEEDED
        assert op.stored_version == 2
        assert path_b.read_text() == source_text(updated, "generated for side B")

    async def test_generator_must_return_text(self, make_engine, mapper, paths):
        path_a, _ = paths
        codecs = {Side.A: make_codec(Side.A), Side.B: make_codec(Side.B, generate=lambda ir: None)}
        text = _write_source(path_a, make_ir("Text"))
        op = await make_engine(codecs=codecs).process_change(
            make_change(path_a, Side.A, mapper, text)
        )
        assert op.error.kind == "generation"

    async def test_transient_io_retried(self, make_engine, mapper, paths, monkeypatch):
        from irsync.sync import engine as engine_module

        path_a, path_b = paths
        real_write = engine_module.write_file_atomic
        calls = []

        def _flaky(path, content):
            calls.append(path)
            if len(calls) < 3:
                raise OSError("resource busy")
            return real_write(path, content)

        monkeypatch.setattr(engine_module, "write_file_atomic", _flaky)
        text = _write_source(path_a, make_ir("Text"))
        op = await make_engine().process_change(make_change(path_a, Side.A, mapper, text))
        assert op.status is OperationStatus.SUCCEEDED
        assert len(calls) == 3
        assert path_b.exists()

    async def test_io_exhausted(self, make_engine, mapper, paths, monkeypatch):
        from irsync.sync import engine as engine_module

        path_a, _ = paths

        def _always_fails(path, content):
            raise OSError("read-only file system")

        monkeypatch.setattr(engine_module, "write_file_atomic", _always_fails)
        text = _write_source(path_a, make_ir("Text"))
        op = await make_engine(retry=RetryConfig(attempts=2, backoff_ms=0)).process_change(
            make_change(path_a, Side.A, mapper, text)
        )
        assert op.status is OperationStatus.FAILED
        assert op.error.kind == "io"
        assert op.error.retryable is True
        assert op.error.stage is EngineStage.WRITING
        assert "after 2 attempt(s)" in op.error.message

    async def test_unexpected_error_is_internal(self, make_engine, mapper, paths, store, monkeypatch):
        path_a, _ = paths

        def _explode(logical_id, ir):
            raise ZeroDivisionError("bug")

        monkeypatch.setattr(store, "has_changed", _explode)
        text = _write_source(path_a, make_ir("Text"))
        op = await make_engine().process_change(make_change(path_a, Side.A, mapper, text))
        assert op.error.kind == "internal"
        assert "ZeroDivisionError" in op.error.message


class TestErrorInfo:
    def test_from_sync_error(self):
        info = error_info(GenerationError("unit", "bad", 4), EngineStage.GENERATING)
        assert info.kind == "generation"
        assert info.stored_version == 4
        assert info.stage is EngineStage.GENERATING

    def test_from_parse_error(self):
        info = error_info(ParseError("/a/X.tsx", "unexpected token"))
        assert info.kind == "parse"
        assert info.retryable is False
        assert info.stored_version is None

    def test_from_unexpected(self):
        assert error_info(KeyError("x")).kind == "internal"


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class TestConflicts:
    """Concurrent edits to screen-home on both sides."""

    def _edit_both(self, engine, mapper, paths):
        path_a, path_b = paths
        doc_a = make_ir("Column", "Text", prefix="a")
        doc_b = make_ir("Scaffold", prefix="b")
        change_a = make_change(
            path_a, Side.A, mapper, _write_source(path_a, doc_a), detected_at=100.0
        )
        change_b = make_change(
            path_b, Side.B, mapper, _write_source(path_b, doc_b), detected_at=100.5
        )
        engine.submit(change_a)
        engine.submit(change_b)
        return doc_a, doc_b

    async def test_prefer_a_regenerates_b(self, make_engine, mapper, paths, store, callbacks):
        path_a, path_b = paths
        engine = make_engine("prefer-A")
        notified = []
        callbacks.subscribe(notified.append)
        doc_a, _ = self._edit_both(engine, mapper, paths)

        await engine.drain()

        assert path_b.read_text() == source_text(doc_a, "generated for side B")
        assert store.retrieve(LOGICAL_ID).ir.checksum() == doc_a.checksum()
        record = engine.resolver.all()[0]
        assert record.status is ConflictStatus.RESOLVED
        assert record.resolution.winner is Side.A
        assert len(notified) == 1
        stats = engine.tracker.statistics()
        assert stats.conflicts_detected == 1
        assert stats.succeeded == 1
        assert stats.cancelled == 1

    async def test_prefer_b_regenerates_a(self, make_engine, mapper, paths):
        path_a, _ = paths
        engine = make_engine("prefer-B")
        _, doc_b = self._edit_both(engine, mapper, paths)
        await engine.drain()
        assert path_a.read_text() == source_text(doc_b, "generated for side A")

    async def test_skip_leaves_both_files(self, make_engine, mapper, paths, store):
        path_a, path_b = paths
        engine = make_engine("skip")
        self._edit_both(engine, mapper, paths)
        before = (path_a.read_text(), path_b.read_text())

        await engine.drain()

        assert (path_a.read_text(), path_b.read_text()) == before
        assert store.current_version(LOGICAL_ID) == 0
        assert engine.tracker.statistics().conflicted == 1
        assert engine.resolver.all()[0].status is ConflictStatus.SKIPPED

    async def test_manual_resolution(self, make_engine, mapper, paths):
        path_a, _ = paths
        engine = make_engine("manual")
        _, doc_b = self._edit_both(engine, mapper, paths)

        drain = asyncio.create_task(engine.drain())
        await _wait_for(lambda: engine.resolver.pending())
        record = engine.resolver.pending()[0]
        engine.resolver.resolve(record.id, Side.B)
        await asyncio.wait_for(drain, 5)

        assert path_a.read_text() == source_text(doc_b, "generated for side A")

    async def test_manual_merged(self, make_engine, mapper, paths, store):
        path_a, path_b = paths
        engine = make_engine("manual")
        self._edit_both(engine, mapper, paths)
        merged = make_ir("Column", "Text", "Scaffold", prefix="m")

        drain = asyncio.create_task(engine.drain())
        await _wait_for(lambda: engine.resolver.pending())
        engine.resolver.resolve(
            engine.resolver.pending()[0].id,
            Resolution(choice=ResolutionChoice.MERGED, ir=merged),
        )
        await asyncio.wait_for(drain, 5)

        assert path_a.read_text() == source_text(merged, "generated for side A")
        assert path_b.read_text() == source_text(merged, "generated for side B")
        assert store.retrieve(LOGICAL_ID).ir.checksum() == merged.checksum()

    async def test_manual_timeout_fails(self, make_engine, mapper, paths, store):
        engine = make_engine("manual", manual_timeout=0.05)
        self._edit_both(engine, mapper, paths)

        await engine.drain()

        record = engine.resolver.all()[0]
        assert record.status is ConflictStatus.FAILED
        failed = [
            op for op in engine.tracker.recent_operations()
            if op.status is OperationStatus.FAILED
        ]
        assert failed[0].error.kind == "conflict"
        assert failed[0].error.message == "conflict resolution timed out"
        assert store.current_version(LOGICAL_ID) == 0

    async def test_sequential_edits_do_not_conflict(self, make_engine, mapper, paths):
        """An edit accepted after a sync completed is not a conflict."""
        path_a, path_b = paths
        engine = make_engine()
        text_a = _write_source(path_a, make_ir("Text"))
        engine.submit(make_change(path_a, Side.A, mapper, text_a, detected_at=100.0))
        await engine.drain()

        text_b = _write_source(path_b, make_ir("Scaffold"))
        engine.submit(make_change(path_b, Side.B, mapper, text_b, detected_at=100.4))
        await engine.drain()

        assert engine.resolver.all() == []
        assert engine.tracker.statistics().succeeded == 2


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


class TestScheduling:
    async def test_newer_same_side_change_supersedes(self, make_engine, mapper, paths, store):
        path_a, path_b = paths
        gate = threading.Event()

        def _gated_convert(text, path):
            if "slow" in text:
                gate.wait(5)
            return fake_convert(text, path)

        codecs = {
            Side.A: make_codec(Side.A, convert=_gated_convert),
            Side.B: make_codec(Side.B),
        }
        engine = make_engine(codecs=codecs)
        runner = asyncio.create_task(engine.run())

        first = _write_source(path_a, make_ir("Text"), header="slow")
        engine.submit(make_change(path_a, Side.A, mapper, first))
        await _wait_for(lambda: engine.in_flight() == [LOGICAL_ID])

        latest = make_ir("Button")
        second = _write_source(path_a, latest)
        engine.submit(make_change(path_a, Side.A, mapper, second))
        await _wait_for(lambda: len(engine.queue) == 0)
        gate.set()

        await engine.stop(drain=True)
        await asyncio.wait_for(runner, 5)

        ops = engine.tracker.operations_for(LOGICAL_ID)
        assert [op.status for op in ops] == [
            OperationStatus.CANCELLED,
            OperationStatus.SUCCEEDED,
        ]
        assert ops[0].note == "superseded by a newer change"
        assert store.current_version(LOGICAL_ID) == 1
        assert path_b.read_text() == source_text(latest, "generated for side B")

    async def test_units_are_independent(self, make_engine, mapper, roots):
        side_a, side_b = roots
        engine = make_engine()
        for name in ("One", "Two", "Three"):
            path = side_a / f"{name}.tsx"
            text = _write_source(path, make_ir(name))
            engine.submit(make_change(path, Side.A, mapper, text))

        await engine.drain()

        assert engine.tracker.statistics().succeeded == 3
        assert sorted(p.name for p in side_b.iterdir()) == ["one.dart", "three.dart", "two.dart"]

    async def test_stop_without_drain_closes_queue(self, make_engine, mapper, paths):
        path_a, _ = paths
        engine = make_engine()
        runner = asyncio.create_task(engine.run())
        await engine.stop(drain=False)
        await asyncio.wait_for(runner, 1)
        assert engine.queue.closed
        engine.submit(make_change(path_a, Side.A, mapper, "{}"))
        assert len(engine.queue) == 0


# ---------------------------------------------------------------------------
# Deletes
# ---------------------------------------------------------------------------


class TestDeletes:
    async def test_delete_not_propagated_by_default(self, make_engine, mapper, paths):
        path_a, path_b = paths
        engine = make_engine()
        text = _write_source(path_a, make_ir("Text"))
        await engine.process_change(make_change(path_a, Side.A, mapper, text))
        path_a.unlink()

        op = await engine.process_change(
            make_change(path_a, Side.A, mapper, change_type=ChangeType.DELETED)
        )

        assert op.status is OperationStatus.SUCCEEDED
        assert op.note == "delete not propagated"
        assert path_b.exists()

    async def test_delete_propagated(self, make_engine, mapper, paths, store):
        path_a, path_b = paths
        engine = make_engine(propagate_deletes=True)
        text = _write_source(path_a, make_ir("Text"))
        await engine.process_change(make_change(path_a, Side.A, mapper, text))
        path_a.unlink()

        op = await engine.process_change(
            make_change(path_a, Side.A, mapper, change_type=ChangeType.DELETED)
        )

        assert op.status is OperationStatus.SUCCEEDED
        assert op.target_paths == [str(path_b.resolve())]
        assert not path_b.exists()
        assert store.list_ids() == []
        assert engine._suppression.is_suppressed(path_b)
