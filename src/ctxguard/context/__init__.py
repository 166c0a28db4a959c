"""Event log contexts: data model, serialization, pruning and registry."""

from .events import DEFAULT_SCOPE_CONFIGS, Event, Scope, ScopeConfig, TangentFrame
from .pruning import PruneResult, prune
from .registry import ContextRegistry, get_default_registry
from .scope import ScopeSuggestion, suggest_scope
from .serializer import LogFormatError, parse_log, render_log
from .session import (
    CleanupMode,
    CleanupResult,
    CleanupStatus,
    Context,
    InvariantViolation,
    TangentStackEmptyError,
)

__all__ = [
    "CleanupMode",
    "CleanupResult",
    "CleanupStatus",
    "Context",
    "ContextRegistry",
    "DEFAULT_SCOPE_CONFIGS",
    "Event",
    "InvariantViolation",
    "LogFormatError",
    "PruneResult",
    "Scope",
    "ScopeConfig",
    "ScopeSuggestion",
    "TangentFrame",
    "TangentStackEmptyError",
    "get_default_registry",
    "parse_log",
    "prune",
    "render_log",
    "suggest_scope",
]
