"""Scope suggestion from what a caller knows about the upcoming work."""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .events import Scope

# A goal longer than this reads as a multi-step objective
LONG_GOAL_CHARS = 50

# Score at which a project scope is suggested, and at which confidence is high
PROJECT_SCORE = 4
HIGH_CONFIDENCE_SCORE = 6


@dataclass
class ScopeSuggestion:
    """Suggested scope with the score and the signals behind it."""

    scope: Scope
    confidence: str  # low, medium, high
    score: int
    reasons: list[str] = field(default_factory=list)

    @property
    def alternative(self) -> Scope:
        return Scope.SESSION if self.scope == Scope.PROJECT else Scope.PROJECT

    def to_dict(self) -> dict:
        return {
            "suggested_scope": self.scope.value,
            "confidence": self.confidence,
            "score": self.score,
            "reasons": list(self.reasons),
            "alternative": self.alternative.value,
        }


def suggest_scope(requirements: Optional[Mapping[str, Any]] = None) -> ScopeSuggestion:
    """Score a work description and suggest SESSION or PROJECT.

    Recognised keys (all optional):
        goal: Objective text; a long one counts as complex.
        vision: Any long-term vision statement.
        expected_duration: "minutes", "hours", "days" or "months".
        complexity: "low", "medium" or "high".
        has_external_dependencies: Work touches outside systems.
        requires_identity: Work needs a persistent identity across sessions.

    Unknown keys are ignored. Pure function, never raises on odd values.
    """
    requirements = requirements or {}
    score = 0
    reasons: list[str] = []

    goal = requirements.get("goal")
    if isinstance(goal, str) and len(goal) > LONG_GOAL_CHARS:
        score += 2
        reasons.append("Complex goal specified")

    if requirements.get("vision"):
        score += 3
        reasons.append("Long-term vision provided")

    if requirements.get("expected_duration") == "months":
        score += 4
        reasons.append("Long-term duration expected")

    if requirements.get("complexity") == "high":
        score += 2
        reasons.append("High complexity indicated")

    if requirements.get("has_external_dependencies"):
        score += 1
        reasons.append("External dependencies involved")

    if requirements.get("requires_identity"):
        score += 3
        reasons.append("Requires persistent identity")

    if score >= HIGH_CONFIDENCE_SCORE:
        confidence = "high"
    elif score >= PROJECT_SCORE:
        confidence = "medium"
    else:
        confidence = "low"

    return ScopeSuggestion(
        scope=Scope.PROJECT if score >= PROJECT_SCORE else Scope.SESSION,
        confidence=confidence,
        score=score,
        reasons=reasons,
    )
