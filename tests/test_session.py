"""Tests for Context: event log, tangents, scope and cleanup."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from ctxguard.archive import ArchiveError, ArchiveNotFoundError
from ctxguard.config import CompactionConfig
from ctxguard.context import (
    CleanupMode,
    CleanupStatus,
    Context,
    InvariantViolation,
    Scope,
    TangentStackEmptyError,
    parse_log,
)
from ctxguard.tokens import TokenAccountant


def fill(context: Context, count: int, size: int = 40) -> None:
    for i in range(count):
        context.add_event("tool_call", {"step": i, "details": "x" * size})


# ---------------------------------------------------------------------------
# TestEventLog
# ---------------------------------------------------------------------------

class TestEventLog:
    def test_initial_state(self, make_context):
        context = make_context(task="deploy")
        assert len(context) == 0
        assert context.scope == Scope.SESSION
        assert context.task == "deploy"
        assert context.current_task == "deploy"
        assert context.tangents == ()

    def test_add_event(self, make_context):
        context = make_context()
        first = context.add_event("tool_call", {"tool": "git"}, importance=5)
        second = context.add_event("tool_result")

        assert first.id == "evt_1"
        assert second.id == "evt_2"
        assert first.importance == 5
        assert second.payload == {}
        assert context.events == (first, second)

    def test_payload_is_copied(self, make_context):
        context = make_context()
        payload = {"files": ["a.py"]}
        event = context.add_event("edit", payload)
        payload["files"].append("b.py")

        assert event.payload == {"files": ["a.py"]}

    def test_events_do_not_expose_log_payloads(self, make_context):
        context = make_context()
        returned = context.add_event("edit", {"files": ["a.py"]})
        returned.payload["files"].append("b.py")
        context.events[0].payload["files"].append("c.py")
        context.events[0].payload["extra"] = True

        assert context.events[0].payload == {"files": ["a.py"]}
        assert "c.py" not in context.serialize()

    def test_invalid_events(self, make_context):
        context = make_context()
        with pytest.raises(ValueError, match="type"):
            context.add_event("")
        with pytest.raises(ValueError, match="importance"):
            context.add_event("note", importance=11)
        assert len(context) == 0

    def test_ids_stay_unique_after_cleanup(self, make_context):
        context = make_context()
        fill(context, 10)
        context._events = context._events[-2:]
        event = context.add_event("note")
        assert event.id == "evt_11"

    def test_invalid_construction(self):
        with pytest.raises(ValueError, match="context_id"):
            Context("")
        with pytest.raises(ValueError, match="Capacity"):
            Context("ctx", capacity=0)

    def test_serialize(self, make_context):
        context = make_context(context_id="ctx_9", task="ship it")
        context.add_event("tool_call", {"tool": "git"})

        text = context.serialize()
        parsed = parse_log(text)

        assert parsed.attributes == {"id": "ctx_9", "scope": "session", "task": "ship it"}
        assert parsed.events == list(context.events)


# ---------------------------------------------------------------------------
# TestTangents
# ---------------------------------------------------------------------------

class TestTangents:
    def test_push_and_pop(self, make_context):
        context = make_context(task="deploy backend")

        frame = context.push_tangent("tests failing", "fix tests", return_point="rerun deploy")
        assert context.current_task == "fix tests"
        assert frame.saved_task == "deploy backend"
        assert frame.stack_depth == 1
        assert context.events[-1].type == "tangent_opened"
        assert context.events[-1].id == frame.event_id

        popped = context.pop_tangent(result="tests green", assets=["tests/test_api.py"])
        assert popped == frame
        assert context.current_task == "deploy backend"

        closed = context.events[-1]
        assert closed.type == "tangent_closed"
        assert closed.payload["result"] == "tests green"
        assert closed.payload["assets"] == ["tests/test_api.py"]
        assert closed.payload["returned_to"] == "deploy backend"

    def test_nested(self, make_context):
        context = make_context(task="a")
        context.push_tangent("r1", "b")
        context.push_tangent("r2", "c")
        assert context.current_task == "c"
        assert context.tangents[-1].stack_depth == 2

        context.pop_tangent()
        assert context.current_task == "b"
        context.pop_tangent()
        assert context.current_task == "a"

    def test_pop_empty_raises_without_change(self, make_context):
        context = make_context(task="a")
        context.add_event("note")
        version = context.version

        with pytest.raises(TangentStackEmptyError):
            context.pop_tangent()

        assert len(context) == 1
        assert context.version == version
        assert issubclass(TangentStackEmptyError, InvariantViolation)
        assert issubclass(InvariantViolation, ValueError)

    def test_set_task_rejected_with_open_tangent(self, make_context):
        context = make_context(task="a")
        context.push_tangent("r", "b")

        with pytest.raises(InvariantViolation):
            context.set_task("z")

        context.pop_tangent()
        context.set_task("z")
        assert context.task == "z"


# ---------------------------------------------------------------------------
# TestScope
# ---------------------------------------------------------------------------

class TestScope:
    def test_upgrade_preserves_events(self, make_context):
        context = make_context()
        fill(context, 3)

        context.upgrade_scope(reason="valuable findings")

        assert context.scope == Scope.PROJECT
        assert context.scope_config.compression_aggressiveness == 0.5
        assert len(context) == 4
        upgrade = context.events[-1]
        assert upgrade.type == "scope_upgrade"
        assert upgrade.payload == {
            "from_scope": "session",
            "to_scope": "project",
            "reason": "valuable findings",
            "preserved_events": 3,
        }

    def test_upgrade_project_raises(self, make_context):
        context = make_context(scope=Scope.PROJECT)
        context.add_event("note")

        with pytest.raises(InvariantViolation, match="already has project scope"):
            context.upgrade_scope(Scope.PROJECT)

        assert context.scope == Scope.PROJECT
        assert len(context) == 1

    def test_session_to_session_raises(self, make_context):
        context = make_context()
        with pytest.raises(InvariantViolation):
            context.upgrade_scope("session")
        assert context.scope == Scope.SESSION

    @pytest.mark.parametrize(
        "scope, total, preserved",
        [
            (Scope.SESSION, 10, 3),
            (Scope.PROJECT, 10, 5),
            (Scope.SESSION, 1, 1),
            (Scope.SESSION, 0, 0),
        ],
    )
    def test_compression_stats(self, make_context, scope, total, preserved):
        context = make_context(scope=scope)
        fill(context, total)

        stats = context.compression_stats()

        assert stats["total_events"] == total
        assert stats["preserved_events"] == preserved
        assert stats["scope"] == scope.value
        assert stats["cleanups"] == 0

    def test_aggressiveness_for_modes(self, make_context):
        session = make_context()
        assert session.aggressiveness_for(CleanupMode.STANDARD) == pytest.approx(0.7)
        assert session.aggressiveness_for(CleanupMode.AGGRESSIVE) == pytest.approx(0.9)
        assert session.aggressiveness_for(CleanupMode.EMERGENCY) == pytest.approx(0.7)

        project = make_context(context_id="p", scope=Scope.PROJECT)
        assert project.aggressiveness_for(CleanupMode.STANDARD) == pytest.approx(0.5)
        assert project.aggressiveness_for(CleanupMode.AGGRESSIVE) == pytest.approx(0.7)
        assert project.aggressiveness_for(CleanupMode.EMERGENCY) == pytest.approx(0.5)

        strict = make_context(
            context_id="s",
            scope=Scope.PROJECT,
            compaction=CompactionConfig(emergency_min_reduction=0.8, critical_boost=0.6),
        )
        assert strict.aggressiveness_for(CleanupMode.AGGRESSIVE) == 1.0
        assert strict.aggressiveness_for(CleanupMode.EMERGENCY) == pytest.approx(0.8)


# ---------------------------------------------------------------------------
# TestUsage
# ---------------------------------------------------------------------------

class TestUsage:
    @pytest.mark.asyncio
    async def test_snapshot(self, make_context):
        context = make_context(capacity=1000)
        fill(context, 5)

        snap = await context.get_usage_snapshot()

        assert snap.tokens == TokenAccountant.estimate(context.serialize())
        assert snap.capacity == 1000
        assert snap.percentage == pytest.approx(snap.tokens / 10)

    @pytest.mark.asyncio
    async def test_snapshot_with_lone_surrogate(self, make_context):
        context = make_context(capacity=1000)
        context.add_event("tool_result", {"stdout": "bad \udcff byte"})

        snap = await context.get_usage_snapshot()

        assert snap.tokens == TokenAccountant.estimate(context.serialize())

    @pytest.mark.asyncio
    async def test_unchanged_log_not_recounted(self, make_context):
        context = make_context()
        fill(context, 3)
        context.accountant.count = AsyncMock(wraps=context.accountant.count)

        first = await context.get_usage_snapshot()
        second = await context.get_usage_snapshot()
        assert first is second
        assert context.accountant.count.await_count == 1

        context.add_event("note")
        await context.get_usage_snapshot()
        assert context.accountant.count.await_count == 2


# ---------------------------------------------------------------------------
# TestCleanup
# ---------------------------------------------------------------------------

class TestCleanup:
    @pytest.mark.asyncio
    async def test_standard_cleanup(self, make_context):
        context = make_context()
        fill(context, 20)
        original_events = list(context.events)
        original_text = context.serialize()

        result = await context.cleanup(CleanupMode.STANDARD, reason="manual")

        assert result.status == CleanupStatus.COMPLETED
        assert result.events_before == 20
        assert result.events_after < 20
        assert result.tokens_after < result.tokens_before
        assert result.aggressiveness == pytest.approx(0.7)
        assert context.events[-1].id == original_events[-1].id

        archived = context.archive.retrieve(result.archive_id)
        assert archived.content == original_text
        assert archived.record.reason == "manual"
        assert archived.record.context_id == context.context_id
        assert context.archived_events(result.archive_id) == original_events

    @pytest.mark.asyncio
    async def test_stats_after_cleanup(self, make_context):
        context = make_context()
        fill(context, 20)

        result = await context.cleanup()

        stats = context.compression_stats()
        assert stats["cleanups"] == 1
        assert stats["last_archive_id"] == result.archive_id
        assert stats["tokens_saved"] == result.tokens_before - result.tokens_after

    @pytest.mark.asyncio
    async def test_concurrent_request_skipped(self, make_context):
        context = make_context()
        fill(context, 10)

        async with context._cleanup_lock:
            result = await context.cleanup()

        assert result.status == CleanupStatus.SKIPPED
        assert len(context) == 10
        assert len(context.archive) == 0

    @pytest.mark.asyncio
    async def test_second_overlapping_cleanup_skipped(self, make_context):
        gate = asyncio.Event()

        async def slow_count(text):
            await gate.wait()
            return len(text) // 4

        context = make_context(accountant=TokenAccountant(exact_counter=slow_count))
        fill(context, 10)

        first = asyncio.create_task(context.cleanup())
        await asyncio.sleep(0)
        assert context.cleanup_in_progress

        second = await context.cleanup()
        gate.set()
        first_result = await first

        assert second.status == CleanupStatus.SKIPPED
        assert first_result.status == CleanupStatus.COMPLETED
        assert len(context.archive) == 1

    @pytest.mark.asyncio
    async def test_events_added_during_cleanup_kept(self, make_context):
        late = []

        async def counting(text):
            if not late:
                late.append(context.add_event("late_event", {"n": 1}))
            return len(text) // 4

        context = make_context(accountant=TokenAccountant(exact_counter=counting))
        fill(context, 20)

        result = await context.cleanup()

        assert result.status == CleanupStatus.COMPLETED
        assert context.events[-1] == late[0]
        archived = context.archive.retrieve(result.archive_id).content
        assert "late_event" not in archived

    @pytest.mark.asyncio
    async def test_no_archive_fails_without_mutation(self, make_context):
        context = make_context(archive=None)
        fill(context, 10)
        before = list(context.events)

        result = await context.cleanup()

        assert result.status == CleanupStatus.FAILED
        assert "archive" in result.error.lower()
        assert list(context.events) == before

    @pytest.mark.asyncio
    async def test_archive_failure_leaves_log_untouched(self, make_context):
        context = make_context()
        fill(context, 10)
        before = list(context.events)

        with patch.object(context.archive, "archive", side_effect=ArchiveError("disk full")):
            result = await context.cleanup()

        assert result.status == CleanupStatus.FAILED
        assert result.error == "disk full"
        assert list(context.events) == before
        assert not context.cleanup_in_progress

        retry = await context.cleanup()
        assert retry.status == CleanupStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unexpected_archive_exception_fails(self, make_context):
        context = make_context()
        fill(context, 10)
        before = list(context.events)

        with patch.object(context.archive, "archive", side_effect=RuntimeError("encoder broke")):
            result = await context.cleanup()

        assert result.status == CleanupStatus.FAILED
        assert result.error == "encoder broke"
        assert list(context.events) == before
        assert not context.cleanup_in_progress

    @pytest.mark.asyncio
    async def test_cleanup_with_lone_surrogate(self, make_context):
        context = make_context()
        fill(context, 10)
        context.add_event("tool_result", {"stdout": "bad \udcff byte"})
        original_events = list(context.events)
        original_text = context.serialize()

        result = await context.cleanup()

        assert result.status == CleanupStatus.COMPLETED
        assert context.archive.retrieve(result.archive_id).content == original_text
        assert context.archived_events(result.archive_id) == original_events

    @pytest.mark.asyncio
    async def test_prune_failure_leaves_log_untouched(self, make_context):
        context = make_context()
        fill(context, 10)
        before = list(context.events)

        with patch("ctxguard.context.session.prune", side_effect=RuntimeError("bug")):
            result = await context.cleanup()

        assert result.status == CleanupStatus.FAILED
        assert result.archive_id is not None
        assert list(context.events) == before

    @pytest.mark.asyncio
    async def test_open_tangent_survives(self, make_context):
        context = make_context(task="main")
        fill(context, 5)
        frame = context.push_tangent("detour", "side task")
        fill(context, 30)

        await context.cleanup(CleanupMode.AGGRESSIVE)

        assert frame.event_id in {e.id for e in context.events}
        assert context.current_task == "side task"
        context.pop_tangent()
        assert context.current_task == "main"

    @pytest.mark.asyncio
    async def test_emergency_reaches_minimum_reduction(self, make_context):
        context = make_context(scope=Scope.PROJECT)
        for i in range(20):
            context.add_event(f"kind_{i % 2}", {"step": i, "text": "y" * 60})

        result = await context.cleanup(CleanupMode.EMERGENCY)

        assert result.status == CleanupStatus.COMPLETED
        assert result.reduction >= 0.5
        assert result.aggressiveness >= 0.5

    @pytest.mark.asyncio
    async def test_archived_events_without_store(self, make_context):
        context = make_context(archive=None)
        with pytest.raises(ArchiveNotFoundError):
            context.archived_events("archive_x")
