"""Structural pruning of an event log.

Three stages, applied in order until the size target is met:

  1. Resolved errors: errors that a later event resolved or retried
  2. Age truncation: keep only the newest floor(n * (1 - aggressiveness))
  3. Repetition: collapse runs of same-shaped consecutive events

Protected events (the newest event, open tangent frames, important
events) are never removed or merged.
"""

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Optional, Sequence

from .events import Event
from .serializer import render_event

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"success", "succeeded", "resolved", "completed", "fixed", "ok"})
CORRELATION_KEYS = ("operation", "tool", "action")

# Type alias for the size function used to decide whether the target is met
SizeMeasure = Callable[[Sequence[Event]], int]


@dataclass
class PruneResult:
    """Pruned events plus per-stage removal counts."""

    events: list[Event]
    resolved_removed: int = 0
    truncated: int = 0
    collapsed: int = 0
    stages: list[str] = field(default_factory=list)

    @property
    def removed(self) -> int:
        return self.resolved_removed + self.truncated + self.collapsed


def rendered_size(events: Sequence[Event]) -> int:
    """Characters the events occupy once rendered."""
    return sum(len(render_event(event)) for event in events)


def retained_count(total: int, aggressiveness: float) -> int:
    """floor(total * (1 - aggressiveness)), immune to float error (10 * 0.2 keeps 2)."""
    return math.floor(round(total * (1 - aggressiveness), 9))


def prune(
    events: Iterable[Event],
    aggressiveness: float,
    protected_ids: Iterable[str] = (),
    preserve_importance: Optional[int] = None,
    measure: Optional[SizeMeasure] = None,
) -> PruneResult:
    """Shrink an event log.

    Args:
        events: Log in insertion order.
        aggressiveness: Fraction of the log to eliminate, in (0, 1].
        protected_ids: Event ids that must survive (open tangent frames).
        preserve_importance: Events with importance at or above this value
            also survive.
        measure: Size function for the target check. Defaults to the
            rendered length, which is proportional to the token estimate.

    Returns:
        PruneResult whose events are an order-preserving subsequence of the
        input (collapsed runs are represented by their newest event).
    """
    if not 0 < aggressiveness <= 1:
        raise ValueError(f"aggressiveness must be in (0, 1], got {aggressiveness}")

    events = list(events)
    result = PruneResult(events=events)
    if len(events) <= 1:
        return result

    measure = measure or rendered_size
    protected = set(protected_ids)
    protected.add(events[-1].id)
    if preserve_importance is not None:
        protected.update(
            e.id for e in events
            if e.importance is not None and e.importance >= preserve_importance
        )

    target_size = measure(events) * (1 - aggressiveness)
    retain_count = retained_count(len(events), aggressiveness)

    current = remove_resolved_errors(events, protected)
    result.resolved_removed = len(events) - len(current)
    result.stages.append("resolved_errors")

    if measure(current) > target_size:
        before = len(current)
        current = truncate_oldest(current, retain_count, protected)
        result.truncated = before - len(current)
        result.stages.append("age_truncation")

    if measure(current) > target_size:
        before = len(current)
        current = collapse_repetitive(current, protected)
        result.collapsed = before - len(current)
        result.stages.append("repetition")

    result.events = current
    logger.debug(
        f"Pruned {len(events)} -> {len(current)} events "
        f"(resolved={result.resolved_removed}, truncated={result.truncated}, "
        f"collapsed={result.collapsed}, stages={result.stages})"
    )
    return result


def remove_resolved_errors(events: Sequence[Event], protected: set[str]) -> list[Event]:
    """Drop error events that a later event resolves."""
    resolved: set[str] = set()
    for index, event in enumerate(events):
        if not event.is_error or event.id in protected:
            continue
        if any(_resolves(later, event) for later in events[index + 1:]):
            resolved.add(event.id)
    return [e for e in events if e.id not in resolved]


def truncate_oldest(
    events: Sequence[Event], retain_count: int, protected: set[str]
) -> list[Event]:
    """Keep the newest retain_count events plus any protected older ones."""
    if len(events) <= retain_count:
        return list(events)
    cut = len(events) - retain_count
    kept_older = [e for e in events[:cut] if e.id in protected]
    return kept_older + list(events[cut:])


def collapse_repetitive(events: Sequence[Event], protected: set[str]) -> list[Event]:
    """Collapse runs of consecutive same-shaped events into their newest member."""
    collapsed: list[Event] = []
    run: list[Event] = []

    def flush() -> None:
        if not run:
            return
        if len(run) == 1:
            collapsed.append(run[0])
        else:
            total = sum(e.repeat_count for e in run)
            collapsed.append(replace(run[-1], repeat_count=total))
        run.clear()

    for event in events:
        if event.id in protected:
            flush()
            collapsed.append(event)
            continue
        if run and not _similar(run[-1], event):
            flush()
        run.append(event)
    flush()

    return collapsed


def payload_shape(value: Any) -> Any:
    """Structure of a payload: keys and value types, ignoring values."""
    if isinstance(value, dict):
        return tuple(sorted((str(k), payload_shape(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple)):
        return ("list", frozenset(payload_shape(v) for v in value))
    if value is None:
        return "null"
    return type(value).__name__


def _similar(a: Event, b: Event) -> bool:
    return (
        a.type == b.type
        and a.importance == b.importance
        and payload_shape(a.payload) == payload_shape(b.payload)
    )


def _resolves(later: Event, error: Event) -> bool:
    refs = later.payload.get("resolves")
    if refs == error.id or (isinstance(refs, (list, tuple)) and error.id in refs):
        return True
    if later.is_error:
        return False
    status = str(later.payload.get("status", "")).lower()
    if status not in SUCCESS_STATUSES:
        return False
    return any(
        key in error.payload and later.payload.get(key) == error.payload[key]
        for key in CORRELATION_KEYS
    )
