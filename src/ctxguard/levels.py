"""Usage levels and edge-triggered level tracking."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

if TYPE_CHECKING:
    from .usage import UsageSnapshot

logger = logging.getLogger(__name__)


class Level(str, Enum):
    """Context usage severity, ordered from least to most severe."""

    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Level):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Level):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Level):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Level):
            return NotImplemented
        return self.rank >= other.rank


_RANKS = {Level.SAFE: 0, Level.WARNING: 1, Level.CRITICAL: 2, Level.EMERGENCY: 3}


@dataclass(frozen=True)
class Thresholds:
    """Level boundaries in percent. A percentage at a boundary enters that level."""

    warning: float = 40.0
    critical: float = 70.0
    emergency: float = 90.0

    def __post_init__(self) -> None:
        if not (0 < self.warning < self.critical < self.emergency <= 100):
            raise ValueError(
                "Thresholds must satisfy 0 < warning < critical < emergency <= 100, "
                f"got {self.warning}/{self.critical}/{self.emergency}"
            )

    def boundary(self, level: Level) -> float:
        """Percentage at which a level starts (0 for SAFE)."""
        return {
            Level.SAFE: 0.0,
            Level.WARNING: self.warning,
            Level.CRITICAL: self.critical,
            Level.EMERGENCY: self.emergency,
        }[level]


def classify(percentage: float, thresholds: Thresholds) -> Level:
    """Map a usage percentage to its level."""
    if percentage >= thresholds.emergency:
        return Level.EMERGENCY
    if percentage >= thresholds.critical:
        return Level.CRITICAL
    if percentage >= thresholds.warning:
        return Level.WARNING
    return Level.SAFE


@dataclass(frozen=True)
class LevelChange:
    """A transition between two levels, with the snapshot that caused it."""

    previous: Level
    current: Level
    snapshot: "UsageSnapshot"
    timestamp: float = field(default_factory=time.time)

    @property
    def escalated(self) -> bool:
        return self.current > self.previous


# Type alias for level change callbacks
LevelCallback = Callable[[LevelChange], Union[None, Awaitable[None]]]


class LevelTracker:
    """Tracks the last observed level and notifies listeners on change.

    Notifications are edge-triggered: observing the same level twice in a
    row produces no callback.
    """

    def __init__(self, initial: Level = Level.SAFE) -> None:
        self._level = initial
        self._listeners: list[LevelCallback] = []

    @property
    def level(self) -> Level:
        """Last observed level (read-only)."""
        return self._level

    def reset(self, level: Level = Level.SAFE) -> None:
        """Forget the last observation without notifying anyone."""
        self._level = level

    async def observe(self, snapshot: "UsageSnapshot") -> Optional[LevelChange]:
        """Record a snapshot's level.

        Returns:
            The LevelChange if the level differs from the last observed one,
            otherwise None.
        """
        previous = self._level
        if snapshot.level == previous:
            return None

        self._level = snapshot.level
        change = LevelChange(previous=previous, current=snapshot.level, snapshot=snapshot)
        logger.info(
            f"Level transition: {previous.value} -> {snapshot.level.value} "
            f"({snapshot.percentage:.1f}%, {snapshot.tokens} tokens)"
        )

        for listener in list(self._listeners):
            try:
                result = listener(change)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error in level listener: {e}")

        return change

    def on_change(self, callback: LevelCallback) -> None:
        """Register a callback for level changes.

        Args:
            callback: Function called with the LevelChange.
        """
        self._listeners.append(callback)

    def remove_listener(self, callback: LevelCallback) -> None:
        """Unregister a previously registered callback."""
        if callback in self._listeners:
            self._listeners.remove(callback)
