"""Structured model invocation on top of ``LLMProvider.chat``.

Every model call in sitewright expects a structured answer: either one
tool call whose arguments validate against a pydantic model
(``invoke_structured``) or one of several offered tools
(``invoke_tools``).  Models that ignore the tool definitions and answer
in plain text are handled by pulling the first JSON object out of the
content, after stripping markdown fences.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from sitewright.exceptions import ModelInvocationError
from sitewright.llm.base import LLMProvider, LLMResult, ToolCall

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


# ---------------------------------------------------------------------------
# Token tracking
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    """Accumulates token usage across multiple LLM calls for one run.

    Provider-agnostic — consumes ``LLMResult`` from any backend.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    api_calls: int = 0
    total_latency_ms: float = 0.0

    def add(self, result: LLMResult) -> None:
        """Record token usage from an ``LLMResult``."""
        self.input_tokens += result.input_tokens
        self.output_tokens += result.output_tokens
        self.total_latency_ms += result.latency_ms
        self.api_calls += 1

    def reset(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.api_calls = 0
        self.total_latency_ms = 0.0

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "api_calls": self.api_calls,
            "total_latency_ms": round(self.total_latency_ms, 1),
        }


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


def tool_definition(name: str, description: str, parameters: dict[str, Any]) -> dict[str, Any]:
    """Build a function-calling tool definition."""
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


def tool_from_model(name: str, description: str, schema: type[BaseModel]) -> dict[str, Any]:
    """Build a tool definition whose parameters are *schema*'s JSON schema."""
    parameters = schema.model_json_schema()
    parameters.pop("title", None)
    return tool_definition(name, description, parameters)


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def extract_json(text: str) -> dict[str, Any]:
    """Parse the first JSON object in *text*.

    Handles common LLM quirks: markdown code fences and chatter around
    the object.

    Raises:
        ValueError: No JSON object could be parsed.
    """
    content = text.strip()
    if content.startswith("```"):
        # Remove opening fence (```json or ```)
        content = content.split("\n", 1)[-1] if "\n" in content else content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(content)
        if not match:
            raise ValueError("no JSON object in model output") from None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ValueError(f"malformed JSON in model output: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _messages(system: str, prompt: str) -> list[dict[str, str]]:
    return [{"role": "system", "content": system}, {"role": "user", "content": prompt}]


def _chat(llm: LLMProvider, name: str, messages: list[dict[str, str]], **kwargs: Any) -> LLMResult:
    # Transport failures left after provider retries become ModelInvocationError
    try:
        return llm.chat(messages, **kwargs)
    except httpx.HTTPError as e:
        raise ModelInvocationError(f"{name}: model call failed: {type(e).__name__}: {e}") from e


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


def invoke_tools(
    llm: LLMProvider,
    *,
    system: str,
    prompt: str,
    tools: list[dict[str, Any]],
    usage: TokenUsage | None = None,
    temperature: float | None = None,
) -> LLMResult:
    """Offer *tools* to the model and return the raw result.

    When the model answers in text instead of calling a tool, a JSON
    object of the form ``{"name": ..., "arguments": {...}}`` in the
    content is promoted to a tool call.  Callers decide what an empty
    ``tool_calls`` list means.
    """
    result = _chat(llm, "tools", _messages(system, prompt), tools=tools, temperature=temperature)
    if usage is not None:
        usage.add(result)

    if not result.tool_calls and result.content:
        offered = {t["function"]["name"] for t in tools}
        try:
            data = extract_json(result.content)
        except ValueError:
            data = {}
        name = data.get("name") or data.get("tool")
        arguments = data.get("arguments") or data.get("parameters") or {}
        if name in offered and isinstance(arguments, dict):
            logger.debug("Promoted text answer to tool call %s", name)
            result.tool_calls = [ToolCall(name=name, arguments=arguments)]
    return result


def invoke_structured(
    llm: LLMProvider,
    *,
    system: str,
    prompt: str,
    schema: type[T],
    tool_name: str,
    description: str = "",
    usage: TokenUsage | None = None,
    temperature: float | None = None,
) -> T:
    """Ask the model for one answer conforming to *schema*.

    The schema is offered as a single tool.  The tool call's arguments
    are validated; failing a tool call, the content is parsed as JSON.

    Raises:
        ModelInvocationError: The model was unreachable or produced
            nothing that validates.
    """
    tool = tool_from_model(tool_name, description or schema.__doc__ or tool_name, schema)
    result = _chat(llm, tool_name, _messages(system, prompt), tools=[tool], temperature=temperature)
    if usage is not None:
        usage.add(result)

    candidates: list[dict[str, Any]] = [c.arguments for c in result.tool_calls if c.name == tool_name]
    if not candidates and result.content:
        try:
            data = extract_json(result.content)
        except ValueError as e:
            raise ModelInvocationError(f"{tool_name}: {e}", raw=result.content) from e
        # Some models wrap the arguments in a tool-call envelope
        if isinstance(data.get("arguments"), dict) and data.get("name") == tool_name:
            data = data["arguments"]
        candidates.append(data)

    if not candidates:
        raise ModelInvocationError(f"{tool_name}: model returned no answer", raw=result.content)

    try:
        return schema.model_validate(candidates[0])
    except ValidationError as e:
        raise ModelInvocationError(
            f"{tool_name}: answer failed validation ({e.error_count()} errors)",
            raw=json.dumps(candidates[0], default=str),
        ) from e
