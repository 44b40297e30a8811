"""Retrying LLM provider wrapper.

Model calls happen once per exploration step and once per binding
discovery or fix, so one dropped connection to a local Ollama server
would otherwise fail a whole session.  ``RetryingLLMProvider`` retries
transport failures and overload responses with exponential backoff;
everything else (bad requests, schema problems) surfaces immediately.

Usage::

    from sitewright.llm.ollama_provider import OllamaProvider
    from sitewright.llm.retry import RetryingLLMProvider

    llm = RetryingLLMProvider(OllamaProvider(model="llama3.1"), max_retries=3)
    result = llm.chat(messages, tools=tools)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from sitewright.llm.base import LLMProvider, LLMResult

logger = logging.getLogger(__name__)

# 408/425/429 mean "try later"; 5xx covers Ollama restarting or swapping models.
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    """Return True if *exc* is worth another attempt."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    status_code = getattr(exc, "status_code", None)
    return isinstance(status_code, int) and status_code in RETRYABLE_STATUS_CODES


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number *attempt* (1-based)."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


class RetryingLLMProvider(LLMProvider):
    """Retry wrapper around any ``LLMProvider``.

    Args:
        delegate: Provider that performs the calls.
        max_retries: Extra attempts after the first; 0 disables retrying.
        base_delay: First backoff delay in seconds, doubled per retry.
        max_delay: Upper bound for a single backoff delay.
    """

    def __init__(
        self,
        delegate: LLMProvider,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ) -> None:
        self._delegate = delegate
        self._max_retries = max(0, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self.retries = 0

    @property
    def delegate(self) -> LLMProvider:
        return self._delegate

    def _attempt(self, call: Callable[[], LLMResult]) -> LLMResult:
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return call()
            except Exception as exc:
                if attempt == attempts or not is_transient(exc):
                    raise
                delay = backoff_delay(attempt, self._base_delay, self._max_delay)
                self.retries += 1
                logger.warning(
                    "LLM call failed (attempt %d/%d): %s: %s; retrying in %.1fs",
                    attempt,
                    attempts,
                    type(exc).__name__,
                    exc,
                    delay,
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    def chat(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        tools: list[dict[str, Any]] | None = None,
    ) -> LLMResult:
        return self._attempt(
            lambda: self._delegate.chat(
                messages,
                temperature=temperature,
                max_tokens=max_tokens,
                json_mode=json_mode,
                tools=tools,
            )
        )

    def check_connectivity(self) -> bool:
        """Single probe; connectivity checks are not retried."""
        return self._delegate.check_connectivity()

    def close(self) -> None:
        self._delegate.close()
