"""Context: an append-only event log with tangents, scope and cleanup."""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Optional, Union

from ..archive import ArchiveNotFoundError, ArchiveStore
from ..config import CompactionConfig
from ..levels import Thresholds
from ..tokens import TokenAccountant
from ..usage import DEFAULT_CAPACITY, UsageSnapshot, measure
from .events import DEFAULT_SCOPE_CONFIGS, Event, Scope, ScopeConfig, TangentFrame
from .pruning import PruneResult, prune, retained_count
from .serializer import parse_log, render_log

logger = logging.getLogger(__name__)

EMERGENCY_STEP = 0.1


class InvariantViolation(ValueError):
    """Raised when an operation would break a context invariant.

    Always raised before any state is changed.
    """


class TangentStackEmptyError(InvariantViolation):
    """Raised when popping a tangent with none open."""


class CleanupMode(str, Enum):
    """How hard a cleanup prunes."""

    STANDARD = "standard"  # Scope aggressiveness
    AGGRESSIVE = "aggressive"  # Scope aggressiveness + critical boost
    EMERGENCY = "emergency"  # Forced minimum reduction, overrides scope


class CleanupStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class CleanupResult:
    """Outcome of one cleanup request."""

    status: CleanupStatus
    mode: CleanupMode
    reason: str = ""
    archive_id: Optional[str] = None
    tokens_before: int = 0
    tokens_after: int = 0
    events_before: int = 0
    events_after: int = 0
    aggressiveness: float = 0.0
    error: Optional[str] = None

    @property
    def reduction(self) -> float:
        """Fraction of tokens removed."""
        if self.tokens_before <= 0:
            return 0.0
        return 1 - self.tokens_after / self.tokens_before

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "mode": self.mode.value,
            "reason": self.reason,
            "archive_id": self.archive_id,
            "tokens_before": self.tokens_before,
            "tokens_after": self.tokens_after,
            "events_before": self.events_before,
            "events_after": self.events_after,
            "aggressiveness": round(self.aggressiveness, 2),
            "reduction": round(self.reduction, 3),
            "error": self.error,
        }


def detached(event: Event) -> Event:
    """Copy of an event whose payload shares nothing with the log."""
    return replace(event, payload=copy.deepcopy(event.payload))


def scope_configs_from(compaction: CompactionConfig) -> dict[Scope, ScopeConfig]:
    """Per-scope settings from the compaction config section."""
    return {
        Scope.SESSION: ScopeConfig(
            compression_aggressiveness=compaction.session.compression_aggressiveness,
            auto_cleanup_retention_days=compaction.session.auto_cleanup_retention_days,
        ),
        Scope.PROJECT: ScopeConfig(
            compression_aggressiveness=compaction.project.compression_aggressiveness,
            auto_cleanup_retention_days=compaction.project.auto_cleanup_retention_days,
        ),
    }


class Context:
    """Owns one event log and everything needed to keep it under capacity.

    Producers append events and open/close tangents. Consumers read usage
    snapshots. Cleanup archives the full log, prunes it and splices back any
    events appended while the cleanup was in flight. At most one cleanup
    runs at a time; a concurrent request is skipped rather than queued.
    """

    def __init__(
        self,
        context_id: str,
        scope: Union[Scope, str] = Scope.SESSION,
        *,
        task: Optional[str] = None,
        scope_configs: Optional[dict[Scope, ScopeConfig]] = None,
        thresholds: Optional[Thresholds] = None,
        capacity: int = DEFAULT_CAPACITY,
        accountant: Optional[TokenAccountant] = None,
        archive: Optional[ArchiveStore] = None,
        compaction: Optional[CompactionConfig] = None,
    ) -> None:
        if not context_id:
            raise ValueError("context_id must not be empty")
        if capacity <= 0:
            raise ValueError(f"Capacity must be positive, got {capacity}")

        self.context_id = context_id
        self._scope = Scope(scope)
        self._compaction = compaction or CompactionConfig()
        if scope_configs is None:
            scope_configs = (
                scope_configs_from(compaction) if compaction else DEFAULT_SCOPE_CONFIGS
            )
        self._scope_configs = dict(scope_configs)
        self.thresholds = thresholds or Thresholds()
        self.capacity = capacity
        self.accountant = accountant or TokenAccountant()
        self.archive = archive

        self._task = task
        self._events: list[Event] = []
        self._tangents: list[TangentFrame] = []
        self._next_id = 1
        self._version = 0
        self._cached_snapshot: Optional[tuple[int, UsageSnapshot]] = None
        self._cleanup_lock = asyncio.Lock()

        self.created_at = time.time()
        self._last_activity = self.created_at

        # Cleanup stats
        self._cleanups = 0
        self._tokens_saved = 0
        self._last_archive_id: Optional[str] = None

    # -- Read-only views --

    @property
    def scope(self) -> Scope:
        return self._scope

    @property
    def scope_config(self) -> ScopeConfig:
        return self._scope_configs[self._scope]

    @property
    def events(self) -> tuple[Event, ...]:
        return tuple(detached(event) for event in self._events)

    @property
    def tangents(self) -> tuple[TangentFrame, ...]:
        return tuple(self._tangents)

    @property
    def task(self) -> Optional[str]:
        """Top-level task."""
        return self._task

    @property
    def current_task(self) -> Optional[str]:
        """Task of the innermost open tangent, else the top-level task."""
        if self._tangents:
            return self._tangents[-1].task
        return self._task

    @property
    def version(self) -> int:
        """Incremented on every change to the serialized log."""
        return self._version

    @property
    def last_activity(self) -> float:
        return self._last_activity

    @property
    def cleanup_in_progress(self) -> bool:
        return self._cleanup_lock.locked()

    def __len__(self) -> int:
        return len(self._events)

    # -- Producer interface --

    def add_event(
        self,
        type: str,
        payload: Optional[dict[str, Any]] = None,
        importance: Optional[int] = None,
    ) -> Event:
        """Append an event. Never prunes."""
        if not type:
            raise ValueError("Event type must not be empty")
        if importance is not None and not 0 <= importance <= 10:
            raise ValueError(f"importance must be in 0-10, got {importance}")

        event = Event(
            id=f"evt_{self._next_id}",
            type=type,
            payload=copy.deepcopy(payload) if payload else {},
            # Microsecond precision, same as the rendered timestamp
            timestamp=round(time.time(), 6),
            importance=importance,
        )
        self._next_id += 1
        self._events.append(event)
        self._touch()
        return detached(event)

    def push_tangent(
        self,
        reason: str,
        new_task: str,
        return_point: Optional[str] = None,
    ) -> TangentFrame:
        """Open a sub-task detour and make new_task the current task."""
        if not new_task:
            raise ValueError("new_task must not be empty")

        depth = len(self._tangents) + 1
        saved_task = self.current_task
        event = self.add_event(
            "tangent_opened",
            {
                "reason": reason,
                "from_task": saved_task,
                "to_task": new_task,
                "stack_depth": depth,
                "return_point": return_point,
            },
        )
        frame = TangentFrame(
            saved_task=saved_task,
            task=new_task,
            reason=reason,
            stack_depth=depth,
            event_id=event.id,
            opened_at=event.timestamp,
            return_point=return_point or "Continue previous work",
        )
        self._tangents.append(frame)
        self._touch()
        logger.debug(f"[{self.context_id}] Tangent opened: {new_task!r} (depth {depth})")
        return frame

    def pop_tangent(
        self,
        result: Any = None,
        assets: Optional[Iterable[str]] = None,
    ) -> TangentFrame:
        """Close the innermost tangent and restore the task it interrupted.

        Raises:
            TangentStackEmptyError: No tangent is open.
        """
        if not self._tangents:
            raise TangentStackEmptyError(f"No open tangent in context {self.context_id}")

        frame = self._tangents.pop()
        self.add_event(
            "tangent_closed",
            {
                "task": frame.task,
                "reason": frame.reason,
                "returned_to": frame.saved_task,
                "return_point": frame.return_point,
                "result": result,
                "assets": list(assets or []),
                "stack_depth": len(self._tangents),
                "duration": round(time.time() - frame.opened_at, 3),
            },
        )
        logger.debug(
            f"[{self.context_id}] Tangent closed: {frame.task!r}, "
            f"back to {frame.saved_task!r}"
        )
        return frame

    def set_task(self, task: Optional[str]) -> None:
        """Replace the top-level task."""
        if self._tangents:
            raise InvariantViolation(
                f"Cannot change task of {self.context_id} with {len(self._tangents)} open tangents"
            )
        self._task = task
        self._touch()

    def upgrade_scope(self, new_scope: Union[Scope, str] = Scope.PROJECT, reason: str = "") -> None:
        """Promote a session context to project scope, keeping every event.

        Raises:
            InvariantViolation: The context is already project scope, or the
                target is not project.
        """
        new_scope = Scope(new_scope)
        if self._scope == Scope.PROJECT:
            raise InvariantViolation(f"Context {self.context_id} already has project scope")
        if new_scope != Scope.PROJECT:
            raise InvariantViolation(
                f"Cannot change scope of {self.context_id} from "
                f"{self._scope.value} to {new_scope.value}"
            )

        old_scope = self._scope
        preserved = len(self._events)
        self._scope = new_scope
        self.add_event(
            "scope_upgrade",
            {
                "from_scope": old_scope.value,
                "to_scope": new_scope.value,
                "reason": reason,
                "preserved_events": preserved,
            },
        )
        logger.info(
            f"[{self.context_id}] Scope upgraded {old_scope.value} -> {new_scope.value} "
            f"({preserved} events preserved)"
        )

    # -- Serialization and usage --

    def serialize(self) -> str:
        return self._render(self._events)

    def _render(self, events: Iterable[Event]) -> str:
        return render_log(events, self.context_id, self._scope.value, self.current_task)

    async def get_usage_snapshot(self) -> UsageSnapshot:
        """Current usage. Repeated calls on an unchanged log do no counting."""
        version = self._version
        if self._cached_snapshot is not None and self._cached_snapshot[0] == version:
            return self._cached_snapshot[1]

        snapshot = await measure(self.serialize(), self.accountant, self.capacity, self.thresholds)
        # Only cache if nothing was appended while counting
        if self._version == version:
            self._cached_snapshot = (version, snapshot)
        return snapshot

    def compression_stats(self) -> dict:
        total = len(self._events)
        aggressiveness = self.scope_config.compression_aggressiveness
        preserved = retained_count(total, aggressiveness)
        if total > 0:
            preserved = max(1, preserved)
        return {
            "total_events": total,
            "preserved_events": preserved,
            "configured_aggressiveness": aggressiveness,
            "scope": self._scope.value,
            "cleanups": self._cleanups,
            "tokens_saved": self._tokens_saved,
            "last_archive_id": self._last_archive_id,
        }

    def summary(self) -> dict:
        """Status view for displays and IPC."""
        return {
            "context_id": self.context_id,
            "scope": self._scope.value,
            "task": self.current_task,
            "events": len(self._events),
            "tangent_depth": len(self._tangents),
            "last_activity": self._last_activity,
            "cleanup_in_progress": self.cleanup_in_progress,
        }

    # -- Cleanup --

    def aggressiveness_for(self, mode: CleanupMode) -> float:
        base = self.scope_config.compression_aggressiveness
        if mode == CleanupMode.AGGRESSIVE:
            return min(1.0, base + self._compaction.critical_boost)
        if mode == CleanupMode.EMERGENCY:
            return max(base, self._compaction.emergency_min_reduction)
        return base

    async def cleanup(
        self,
        mode: Union[CleanupMode, str] = CleanupMode.STANDARD,
        reason: Optional[str] = None,
    ) -> CleanupResult:
        """Archive the full log, then prune it.

        Returns a SKIPPED result if another cleanup is running and a FAILED
        result (log untouched) if archiving or pruning raised.
        """
        mode = CleanupMode(mode)
        reason = reason or f"{mode.value}_cleanup"

        if self._cleanup_lock.locked():
            logger.debug(f"[{self.context_id}] Cleanup already in progress, skipping")
            return CleanupResult(status=CleanupStatus.SKIPPED, mode=mode, reason=reason)

        async with self._cleanup_lock:
            return await self._run_cleanup(mode, reason)

    async def _run_cleanup(self, mode: CleanupMode, reason: str) -> CleanupResult:
        # Snapshot the log; events appended during awaits are kept after the pruned prefix
        snapshot_len = len(self._events)
        snapshot_events = self._events[:snapshot_len]
        content = self._render(snapshot_events)
        result = CleanupResult(
            status=CleanupStatus.FAILED,
            mode=mode,
            reason=reason,
            events_before=snapshot_len,
            events_after=snapshot_len,
        )

        before = await self.accountant.count(content)
        result.tokens_before = result.tokens_after = before.tokens

        if self.archive is None:
            result.error = "No archive store configured"
            logger.error(f"[{self.context_id}] Cleanup failed: {result.error}")
            return result

        try:
            archive_id = self.archive.archive(
                content,
                reason,
                token_count=before.tokens,
                context_id=self.context_id,
                meta={
                    "scope": self._scope.value,
                    "mode": mode.value,
                    "events": snapshot_len,
                    "task": self.current_task,
                },
            )
        except Exception as e:
            result.error = str(e)
            logger.error(f"[{self.context_id}] Cleanup failed while archiving: {e}")
            return result

        result.archive_id = archive_id
        protected = {frame.event_id for frame in self._tangents}

        try:
            pruned, aggressiveness = self._prune_for_mode(snapshot_events, mode, protected, content)
        except Exception as e:
            result.error = str(e)
            logger.error(f"[{self.context_id}] Cleanup failed while pruning: {e}")
            return result

        added_during = self._events[snapshot_len:]
        self._events = pruned.events + added_during
        self._touch()

        after = await self.get_usage_snapshot()
        result.status = CleanupStatus.COMPLETED
        result.aggressiveness = aggressiveness
        result.events_after = len(self._events)
        result.tokens_after = after.tokens

        self._cleanups += 1
        self._tokens_saved += max(0, result.tokens_before - result.tokens_after)
        self._last_archive_id = archive_id

        logger.info(
            f"[{self.context_id}] {mode.value} cleanup: "
            f"{result.events_before} -> {result.events_after} events, "
            f"{result.tokens_before} -> {result.tokens_after} tokens "
            f"(aggressiveness {aggressiveness:.2f}, archived as {archive_id})"
        )
        return result

    def _prune_for_mode(
        self,
        events: list[Event],
        mode: CleanupMode,
        protected: set[str],
        original: str,
    ) -> tuple[PruneResult, float]:
        aggressiveness = self.aggressiveness_for(mode)
        preserve = self._compaction.preserve_importance
        pruned = prune(events, aggressiveness, protected, preserve)

        if mode != CleanupMode.EMERGENCY:
            return pruned, aggressiveness

        # Emergency must reach the minimum reduction; escalate until it does
        required = self._compaction.emergency_min_reduction
        original_tokens = TokenAccountant.estimate(original)
        while aggressiveness < 1.0:
            remaining = TokenAccountant.estimate(self._render(pruned.events))
            if original_tokens == 0 or 1 - remaining / original_tokens >= required:
                break
            aggressiveness = min(1.0, round(aggressiveness + EMERGENCY_STEP, 2))
            logger.debug(f"[{self.context_id}] Emergency escalation to {aggressiveness:.2f}")
            pruned = prune(events, aggressiveness, protected, preserve)

        return pruned, aggressiveness

    def archived_events(self, archive_id: str) -> list[Event]:
        """Restore the events of an archived log.

        Raises:
            ArchiveNotFoundError: No archive store, or unknown id.
            ArchiveIntegrityError: Stored blob failed verification.
        """
        if self.archive is None:
            raise ArchiveNotFoundError(f"No archive store for context {self.context_id}")
        return parse_log(self.archive.retrieve(archive_id).content).events

    def _touch(self) -> None:
        self._version += 1
        self._last_activity = time.time()
