"""Token accounting: exact counting with estimation fallback."""

from .accountant import CountSource, ExactCounter, TokenAccountant, TokenCount
from .counter import AnthropicTokenCounter, CountingError, build_counter

__all__ = [
    "AnthropicTokenCounter",
    "CountSource",
    "CountingError",
    "ExactCounter",
    "TokenAccountant",
    "TokenCount",
    "build_counter",
]
