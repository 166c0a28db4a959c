"""Periodic usage monitoring with threshold-triggered cleanup."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional, Union

from .context.session import CleanupMode, CleanupResult, CleanupStatus, Context
from .levels import Level, LevelCallback, LevelTracker, Thresholds
from .logging import set_current_level
from .usage import UsageSnapshot

logger = logging.getLogger(__name__)

# Level entered -> cleanup requested
CLEANUP_MODES = {
    Level.WARNING: CleanupMode.STANDARD,
    Level.CRITICAL: CleanupMode.AGGRESSIVE,
    Level.EMERGENCY: CleanupMode.EMERGENCY,
}

# Trend slopes, in percentage points per second
GROWING_SLOPE = 0.01
RAPID_GROWTH_SLOPE = 0.05

# Percentage points gained between two ticks that counts as rapid growth
RAPID_GROWTH_POINTS = 10.0

# Type alias for cleanup result callbacks
CleanupCallback = Callable[[CleanupResult], Union[None, Awaitable[None]]]

# Type alias for rapid growth callbacks
GrowthCallback = Callable[["GrowthNotice"], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class UsageSample:
    """One entry in the monitor's usage history."""

    timestamp: float
    tokens: int
    percentage: float
    level: Level


@dataclass(frozen=True)
class Prediction:
    """Estimated seconds until a threshold is crossed at the current slope."""

    level: Level
    eta_seconds: float


@dataclass(frozen=True)
class GrowthNotice:
    """Usage rose by more than RAPID_GROWTH_POINTS since the previous tick."""

    context_id: str
    change: float  # Percentage points
    interval: float  # Seconds since the previous tick
    snapshot: UsageSnapshot


@dataclass
class Trend:
    label: str  # stable, growing, rapid_growth, shrinking, insufficient_data
    slope: float = 0.0
    samples: int = 0
    predictions: list[Prediction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "trend": self.label,
            "slope_per_minute": round(self.slope * 60, 3),
            "samples": self.samples,
            "predictions": {p.level.value: round(p.eta_seconds, 1) for p in self.predictions},
        }


class ThresholdMonitor:
    """Watches one context and requests cleanup when usage changes level.

    Entering warning requests a standard cleanup, critical an aggressive
    one, emergency an emergency one. After a completed cleanup the context
    is measured again so the level can fall back; that second measurement
    never triggers another cleanup in the same tick.
    """

    def __init__(
        self,
        context: Context,
        thresholds: Optional[Thresholds] = None,
        poll_interval: float = 5.0,
        auto_cleanup: bool = True,
        history_size: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")

        self.context = context
        self.thresholds = thresholds or context.thresholds
        self.poll_interval = poll_interval
        self.auto_cleanup = auto_cleanup
        self._clock = clock

        self._tracker = LevelTracker()
        self._cleanup_listeners: list[CleanupCallback] = []
        self._growth_listeners: list[GrowthCallback] = []
        self._history: deque[UsageSample] = deque(maxlen=history_size)
        self._last_snapshot: Optional[UsageSnapshot] = None

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def level(self) -> Level:
        return self._tracker.level

    @property
    def last_snapshot(self) -> Optional[UsageSnapshot]:
        return self._last_snapshot

    @property
    def history(self) -> list[UsageSample]:
        return list(self._history)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- Subscriptions --

    def subscribe(self, callback: LevelCallback) -> None:
        """Register a callback for level changes."""
        self._tracker.on_change(callback)

    def unsubscribe(self, callback: LevelCallback) -> None:
        self._tracker.remove_listener(callback)

    def subscribe_cleanup(self, callback: CleanupCallback) -> None:
        """Register a callback for cleanup results."""
        self._cleanup_listeners.append(callback)

    def unsubscribe_cleanup(self, callback: CleanupCallback) -> None:
        if callback in self._cleanup_listeners:
            self._cleanup_listeners.remove(callback)

    def subscribe_growth(self, callback: GrowthCallback) -> None:
        """Register a callback for rapid growth between two ticks."""
        self._growth_listeners.append(callback)

    def unsubscribe_growth(self, callback: GrowthCallback) -> None:
        if callback in self._growth_listeners:
            self._growth_listeners.remove(callback)

    def update_thresholds(
        self, thresholds: Optional[Thresholds] = None, **changes: float
    ) -> Thresholds:
        """Replace the level boundaries at runtime.

        Keyword changes are applied on top of the given (or current)
        thresholds, so update_thresholds(warning=50) moves one boundary.
        The current level is re-classified on the next tick, which may
        request a cleanup.

        Raises:
            ValueError: The result is not a valid ordering. The current
                thresholds are kept.
        """
        updated = replace(thresholds or self.thresholds, **changes)
        self.thresholds = updated
        logger.info(
            f"[{self.context.context_id}] Thresholds updated: "
            f"{updated.warning}/{updated.critical}/{updated.emergency}"
        )
        return updated

    # -- Polling --

    async def _measure(self) -> UsageSnapshot:
        snapshot = await self.context.get_usage_snapshot()
        if self.thresholds != self.context.thresholds:
            snapshot = UsageSnapshot.from_tokens(
                snapshot.tokens, snapshot.capacity, self.thresholds, snapshot.source
            )
        self._last_snapshot = snapshot
        self._history.append(
            UsageSample(
                timestamp=self._clock(),
                tokens=snapshot.tokens,
                percentage=snapshot.percentage,
                level=snapshot.level,
            )
        )
        return snapshot

    async def _observe(self, snapshot: UsageSnapshot):
        change = await self._tracker.observe(snapshot)
        set_current_level(self._tracker.level)
        return change

    async def poll_once(self) -> UsageSnapshot:
        """Measure once, notify on level change, clean up if warranted.

        Returns:
            The latest snapshot (post-cleanup if a cleanup completed).
        """
        previous = self._history[-1] if self._history else None
        snapshot = await self._measure()
        change = await self._observe(snapshot)
        if previous is not None:
            await self._check_growth(previous, snapshot)

        if change is None or not self.auto_cleanup or change.current == Level.SAFE:
            return snapshot

        mode = CLEANUP_MODES[change.current]
        logger.info(
            f"[{self.context.context_id}] Entered {change.current.value} "
            f"at {snapshot.percentage:.1f}%, requesting {mode.value} cleanup"
        )
        result = await self.context.cleanup(mode, reason=f"threshold_{change.current.value}")
        await self._notify(self._cleanup_listeners, result, "cleanup")

        if result.status == CleanupStatus.COMPLETED:
            snapshot = await self._measure()
            await self._observe(snapshot)
        elif result.status == CleanupStatus.FAILED:
            logger.warning(
                f"[{self.context.context_id}] Cleanup failed, will retry on next breach: "
                f"{result.error}"
            )

        return snapshot

    async def _check_growth(self, previous: UsageSample, snapshot: UsageSnapshot) -> None:
        rise = snapshot.percentage - previous.percentage
        if rise <= RAPID_GROWTH_POINTS:
            return

        notice = GrowthNotice(
            context_id=self.context.context_id,
            change=round(rise, 2),
            interval=self._history[-1].timestamp - previous.timestamp,
            snapshot=snapshot,
        )
        logger.warning(
            f"[{self.context.context_id}] Rapid growth: +{rise:.1f}% "
            f"in {notice.interval:.0f}s"
        )
        await self._notify(self._growth_listeners, notice, "growth")

    async def _notify(self, listeners: list, item, kind: str) -> None:
        for listener in list(listeners):
            try:
                outcome = listener(item)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Error in {kind} listener: {e}")

    def start(self) -> None:
        """Begin polling in a background task."""
        if self.is_running:
            logger.warning(f"[{self.context.context_id}] Monitor already running")
            return
        self._tracker.reset(Level.SAFE)
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"[{self.context.context_id}] Monitoring every {self.poll_interval}s "
            f"(auto_cleanup={self.auto_cleanup})"
        )

    async def stop(self) -> None:
        """Stop polling. A cleanup in flight runs to completion first."""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        logger.info(f"[{self.context.context_id}] Monitoring stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(
                    f"[{self.context.context_id}] Monitor tick failed: {e}", exc_info=True
                )

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # -- Trend analysis --

    def trend(self, window_seconds: float = 600.0) -> Trend:
        """Growth trend over the recent history window."""
        cutoff = self._clock() - window_seconds
        recent = [s for s in self._history if s.timestamp > cutoff]
        if len(recent) < 2:
            return Trend(label="insufficient_data", samples=len(recent))

        first, last = recent[0], recent[-1]
        span = last.timestamp - first.timestamp
        if span <= 0:
            return Trend(label="insufficient_data", samples=len(recent))

        slope = (last.percentage - first.percentage) / span
        if slope > RAPID_GROWTH_SLOPE:
            label = "rapid_growth"
        elif slope > GROWING_SLOPE:
            label = "growing"
        elif slope < -GROWING_SLOPE:
            label = "shrinking"
        else:
            label = "stable"

        predictions = []
        if slope > 0:
            for level in (Level.WARNING, Level.CRITICAL, Level.EMERGENCY):
                eta = (self.thresholds.boundary(level) - last.percentage) / slope
                if eta > 0:
                    predictions.append(Prediction(level=level, eta_seconds=eta))

        return Trend(label=label, slope=slope, samples=len(recent), predictions=predictions)
