"""Event log data model.

Events are immutable once appended. Tangent frames record sub-task
detours; scope configs control how much a cleanup removes.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class Scope(str, Enum):
    """Lifetime class of a context."""

    SESSION = "session"  # Short-lived, disposable
    PROJECT = "project"  # Long-lived, valuable


@dataclass(frozen=True)
class ScopeConfig:
    """Compaction settings attached to a scope."""

    compression_aggressiveness: float
    auto_cleanup_retention_days: int

    def __post_init__(self) -> None:
        if not 0 < self.compression_aggressiveness <= 1:
            raise ValueError(
                "compression_aggressiveness must be in (0, 1], "
                f"got {self.compression_aggressiveness}"
            )
        if self.auto_cleanup_retention_days < 1:
            raise ValueError(
                "auto_cleanup_retention_days must be at least 1, "
                f"got {self.auto_cleanup_retention_days}"
            )


DEFAULT_SCOPE_CONFIGS: dict[Scope, ScopeConfig] = {
    Scope.SESSION: ScopeConfig(compression_aggressiveness=0.7, auto_cleanup_retention_days=30),
    Scope.PROJECT: ScopeConfig(compression_aggressiveness=0.5, auto_cleanup_retention_days=365),
}


@dataclass(frozen=True)
class Event:
    """A single entry in a context's log."""

    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    importance: Optional[int] = None  # 0-10
    repeat_count: int = 1  # >1 when a run of similar events was collapsed

    @property
    def is_error(self) -> bool:
        return self.type == "error" or self.type.endswith(("_error", "_failed"))


@dataclass(frozen=True)
class TangentFrame:
    """An open sub-task detour on the tangent stack."""

    saved_task: Optional[str]  # Task to restore on pop
    task: str  # Task worked on during the detour
    reason: str
    stack_depth: int  # Depth after this frame was pushed
    event_id: str  # The tangent_opened event that defines this frame
    opened_at: float = field(default_factory=time.time)
    return_point: str = "Continue previous work"
