"""Usage snapshots: token counts measured against a fixed capacity."""

from dataclasses import dataclass

from .levels import Level, Thresholds, classify
from .tokens import CountSource, TokenAccountant

DEFAULT_CAPACITY = 200000


@dataclass(frozen=True)
class UsageSnapshot:
    """Token usage of one serialized context at a point in time."""

    tokens: int
    capacity: int
    percentage: float
    level: Level
    source: CountSource = CountSource.ESTIMATE

    @property
    def remaining_percentage(self) -> float:
        """Percentage left before the context is full (never negative)."""
        return max(0.0, 100.0 - self.percentage)

    @classmethod
    def from_tokens(
        cls,
        tokens: int,
        capacity: int,
        thresholds: Thresholds,
        source: CountSource = CountSource.ESTIMATE,
    ) -> "UsageSnapshot":
        if capacity <= 0:
            raise ValueError(f"Capacity must be positive, got {capacity}")
        percentage = tokens / capacity * 100
        return cls(
            tokens=tokens,
            capacity=capacity,
            percentage=percentage,
            level=classify(percentage, thresholds),
            source=source,
        )

    def to_dict(self) -> dict:
        """Consumer view for status displays."""
        return {
            "tokens": self.tokens,
            "capacity": self.capacity,
            "percentage": round(self.percentage, 2),
            "remaining_percentage": round(self.remaining_percentage, 2),
            "level": self.level.value,
            "source": self.source.value,
        }


async def measure(
    text: str,
    accountant: TokenAccountant,
    capacity: int,
    thresholds: Thresholds,
) -> UsageSnapshot:
    """Count a serialized log and classify it."""
    count = await accountant.count(text)
    return UsageSnapshot.from_tokens(count.tokens, capacity, thresholds, count.source)
