"""LLM provider abstraction for sitewright.

Supports the ``ollama`` (local) backend through a unified interface,
plus structured (tool-calling) invocation helpers.
"""

from sitewright.llm.base import LLMProvider, LLMResult, ToolCall
from sitewright.llm.factory import create_llm_provider
from sitewright.llm.structured import TokenUsage, invoke_structured, invoke_tools

__all__ = [
    "LLMProvider",
    "LLMResult",
    "TokenUsage",
    "ToolCall",
    "create_llm_provider",
    "invoke_structured",
    "invoke_tools",
]
