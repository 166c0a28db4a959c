"""Registry of live contexts keyed by id."""

import logging
import threading
import time
from typing import Any, Optional, Union

from .events import Scope
from .session import Context

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class ContextRegistry:
    """Maps context ids to Context objects.

    Tests build isolated registries; hosts that want a single shared one
    use get_default_registry(). Mutations are serialized by a lock.
    """

    def __init__(self) -> None:
        self._contexts: dict[str, Context] = {}
        self._lock = threading.Lock()

    def create(
        self,
        context_id: str,
        scope: Union[Scope, str] = Scope.SESSION,
        *,
        force: bool = False,
        **kwargs: Any,
    ) -> Context:
        """Return the context for context_id, creating it if needed.

        Idempotent: an existing context is returned unchanged unless force
        is set, in which case it is replaced.
        """
        with self._lock:
            existing = self._contexts.get(context_id)
            if existing is not None and not force:
                return existing

            context = Context(context_id, scope, **kwargs)
            self._contexts[context_id] = context

        action = "Replaced" if existing is not None else "Created"
        logger.info(f"{action} context {context_id} (scope={context.scope.value})")
        return context

    def get(self, context_id: str) -> Optional[Context]:
        return self._contexts.get(context_id)

    def remove(self, context_id: str) -> Optional[Context]:
        """Drop a context. Returns it, or None if it was not registered."""
        with self._lock:
            context = self._contexts.pop(context_id, None)
        if context is not None:
            logger.info(f"Removed context {context_id}")
        return context

    def list_active(self) -> list[str]:
        return list(self._contexts)

    def expired(self, now: Optional[float] = None) -> list[str]:
        """Ids of contexts idle longer than their scope's retention."""
        now = time.time() if now is None else now
        return [
            context_id
            for context_id, context in list(self._contexts.items())
            if now - context.last_activity
            > context.scope_config.auto_cleanup_retention_days * SECONDS_PER_DAY
        ]

    def __contains__(self, context_id: str) -> bool:
        return context_id in self._contexts

    def __len__(self) -> int:
        return len(self._contexts)


_default_registry: Optional[ContextRegistry] = None


def get_default_registry() -> ContextRegistry:
    """Process-wide registry, created on first use."""
    global _default_registry
    if _default_registry is None:
        _default_registry = ContextRegistry()
    return _default_registry
