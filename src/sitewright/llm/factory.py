"""Factory for creating LLM provider instances from sitewright settings.

Two flavours:

    create_llm_provider()              — primary model (discovery, fixes, exploration)
    create_llm_provider(role="cheap")  — cheap/fast model for content parsing

When ``role`` is ``"cheap"`` but ``llm.cheap_model`` is empty, the
primary model is used as a transparent fallback.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sitewright.llm.base import LLMProvider

if TYPE_CHECKING:
    from sitewright.settings.config import LLMSettings

logger = logging.getLogger(__name__)


def create_llm_provider(
    provider: str | None = None,
    *,
    role: str = "primary",
) -> LLMProvider:
    """Create an LLM provider from settings or an explicit provider name.

    The returned provider is wrapped with ``RetryingLLMProvider`` for
    resilience against transient errors.

    Args:
        provider: Override provider name. If None, reads from
            ``get_settings().llm.provider``.
        role: ``"primary"`` or ``"cheap"``.

    Returns:
        A configured ``LLMProvider`` instance (with retry wrapper).

    Raises:
        ValueError: If the provider name is not recognized.
    """
    from sitewright.settings import get_settings

    settings = get_settings()
    provider_name = (provider or settings.llm.provider).lower().strip()
    model = _resolve_model(settings.llm, role)

    base: LLMProvider

    if provider_name == "ollama":
        from sitewright.llm.ollama_provider import OllamaProvider

        base = OllamaProvider(
            base_url=settings.llm.ollama_base_url,
            model=model,
            temperature=settings.llm.temperature,
            max_tokens=settings.llm.max_tokens,
            timeout=settings.llm.request_timeout_sec,
        )
    else:
        raise ValueError(f"Unknown LLM provider: {provider_name!r}. Supported: ollama")

    logger.info("Created LLM provider: provider=%s model=%s role=%s", provider_name, model, role)

    from sitewright.llm.retry import RetryingLLMProvider

    return RetryingLLMProvider(base, max_retries=settings.llm.max_retries, base_delay=1.0)


def _resolve_model(llm_settings: "LLMSettings", role: str) -> str:
    """Resolve the concrete model name for the given role."""
    if role == "cheap" and llm_settings.cheap_model:
        return llm_settings.cheap_model
    return llm_settings.model
