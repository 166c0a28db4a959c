"""Token accounting with exact counting, estimation fallback and an LRU cache."""

import hashlib
import logging
import math
from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Type alias for an exact counting call (e.g. AnthropicTokenCounter.count_tokens)
ExactCounter = Callable[[str], Awaitable[int]]


class CountSource(str, Enum):
    """Where a token count came from."""

    EXACT = "exact"
    ESTIMATE = "estimate"


@dataclass(frozen=True)
class TokenCount:
    """Result of counting one serialized log."""

    tokens: int
    source: CountSource
    from_cache: bool = False


class TokenAccountant:
    """Converts serialized logs into token counts.

    Tries the exact counter first when one is configured; any failure
    degrades silently to ceil(chars / 4). Results for identical input are
    cached in a bounded LRU keyed by a SHA-256 of the text, so an unchanged
    log is never counted twice.
    """

    def __init__(
        self,
        exact_counter: Optional[ExactCounter] = None,
        cache_size: int = 100,
        chars_per_token: int = 4,
    ) -> None:
        if cache_size < 1:
            raise ValueError(f"cache_size must be at least 1, got {cache_size}")
        if chars_per_token < 1:
            raise ValueError(f"chars_per_token must be at least 1, got {chars_per_token}")
        self._exact_counter = exact_counter
        self._cache_size = cache_size
        self._chars_per_token = chars_per_token
        self._cache: OrderedDict[str, TokenCount] = OrderedDict()
        self._hits = 0
        self._misses = 0

    @property
    def has_exact_counter(self) -> bool:
        return self._exact_counter is not None

    @staticmethod
    def estimate(text: str, chars_per_token: int = 4) -> int:
        """Deterministic character-based estimate."""
        return math.ceil(len(text) / chars_per_token)

    async def count(self, text: str) -> TokenCount:
        """Count tokens in a serialized log. Never raises."""
        key = hashlib.sha256(text.encode("utf-8", "surrogatepass")).hexdigest()

        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            self._hits += 1
            return replace(cached, from_cache=True)

        self._misses += 1
        result = await self._count_uncached(text)
        self._store(key, result)
        return result

    async def _count_uncached(self, text: str) -> TokenCount:
        if self._exact_counter is not None and text:
            try:
                tokens = await self._exact_counter(text)
                return TokenCount(tokens=int(tokens), source=CountSource.EXACT)
            except Exception as e:
                logger.warning(f"Exact token counting failed, using estimate: {e}")

        return TokenCount(
            tokens=self.estimate(text, self._chars_per_token),
            source=CountSource.ESTIMATE,
        )

    def _store(self, key: str, result: TokenCount) -> None:
        self._cache[key] = result
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def cache_stats(self) -> dict:
        """Cache statistics for status output."""
        lookups = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self._cache_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }

    def clear_cache(self) -> None:
        """Drop all cached counts."""
        self._cache.clear()
        logger.debug("Token cache cleared")
