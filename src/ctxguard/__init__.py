"""ctxguard - context usage monitoring and auto-compaction for agent event logs."""

__version__ = "0.1.0"

from .archive import (
    ArchiveError,
    ArchiveIntegrityError,
    ArchiveNotFoundError,
    ArchiveRecord,
    ArchiveStore,
    ArchivedLog,
)
from .config import Config
from .context import (
    CleanupMode,
    CleanupResult,
    CleanupStatus,
    Context,
    ContextRegistry,
    Event,
    InvariantViolation,
    Scope,
    ScopeConfig,
    ScopeSuggestion,
    TangentFrame,
    TangentStackEmptyError,
    get_default_registry,
    prune,
    suggest_scope,
)
from .engine import ContextEngine
from .levels import Level, LevelChange, Thresholds, classify
from .monitor import ThresholdMonitor
from .tokens import TokenAccountant
from .usage import UsageSnapshot

__all__ = [
    "ArchiveError",
    "ArchiveIntegrityError",
    "ArchiveNotFoundError",
    "ArchiveRecord",
    "ArchiveStore",
    "ArchivedLog",
    "CleanupMode",
    "CleanupResult",
    "CleanupStatus",
    "Config",
    "Context",
    "ContextEngine",
    "ContextRegistry",
    "Event",
    "InvariantViolation",
    "Level",
    "LevelChange",
    "Scope",
    "ScopeConfig",
    "ScopeSuggestion",
    "TangentFrame",
    "TangentStackEmptyError",
    "ThresholdMonitor",
    "Thresholds",
    "TokenAccountant",
    "UsageSnapshot",
    "classify",
    "get_default_registry",
    "prune",
    "suggest_scope",
]
