"""Exact token counting through the Anthropic count_tokens endpoint."""

import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class CountingError(Exception):
    """Raised when the count_tokens request fails."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class AnthropicTokenCounter:
    """Async client for the Claude token counting API.

    Counts a serialized context as a single user message. Failures are
    raised as CountingError and never retried here: the accountant falls
    back to its estimator instead.
    """

    # HTTP status codes that are worth trying again on a later poll
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-20250514",
        timeout: float = 10.0,
    ) -> None:
        """Initialize the counter.

        Args:
            api_key: Anthropic API key. If not provided, reads from
                     ANTHROPIC_API_KEY environment variable.
            model: Model whose tokenizer is used for counting.
            timeout: Request timeout in seconds.

        Raises:
            ValueError: If no API key is available.
        """
        from anthropic import AsyncAnthropic

        self._api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self._api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY environment variable not set. "
                "Please set it or pass api_key parameter."
            )

        self._client = AsyncAnthropic(
            api_key=self._api_key,
            timeout=httpx.Timeout(timeout, connect=5.0),
            max_retries=0,
        )
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    async def count_tokens(self, text: str) -> int:
        """Count the input tokens of a text.

        Args:
            text: Serialized context.

        Returns:
            Number of input tokens reported by the API.

        Raises:
            CountingError: On any API failure.
        """
        from anthropic import APIConnectionError, APIStatusError, APITimeoutError

        try:
            result = await self._client.messages.count_tokens(
                model=self._model,
                messages=[{"role": "user", "content": text}],
            )
            return int(result.input_tokens)

        except APITimeoutError as e:
            raise CountingError("count_tokens timed out", retryable=True) from e

        except APIConnectionError as e:
            raise CountingError(f"count_tokens connection error: {e}", retryable=True) from e

        except APIStatusError as e:
            retryable = e.status_code in self.RETRYABLE_STATUS_CODES
            raise CountingError(
                f"count_tokens error {e.status_code}: {e.message}", retryable=retryable
            ) from e

        except Exception as e:
            raise CountingError(f"Unexpected count_tokens error: {e}") from e

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()


def build_counter(
    model: str = "claude-sonnet-4-20250514",
    timeout: float = 10.0,
    api_key: Optional[str] = None,
) -> Optional[AnthropicTokenCounter]:
    """Build an exact counter, or None when no API key is configured."""
    try:
        return AnthropicTokenCounter(api_key=api_key, model=model, timeout=timeout)
    except ValueError:
        logger.info("No Anthropic API key, token counts will be estimated")
        return None
