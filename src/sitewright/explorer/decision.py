"""Decision agent: picks exactly one explorer action per step."""

from __future__ import annotations

import logging
from typing import Any

from sitewright.exceptions import ModelInvocationError
from sitewright.explorer.actions import ACTION_MODELS, ExplorerAction, ObserveAction, parse_action
from sitewright.llm.base import LLMProvider
from sitewright.llm.structured import TokenUsage, invoke_tools, tool_definition

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """\
You are exploring a website to learn how it works.

Interact with the page: click things, scroll around, see what changes. Build understanding \
through experimentation.

The DOM shows elements in a tree. Clickable elements have [CLICK: "selector"] - use that exact selector.

RULES:
1. ONLY use selectors from [CLICK: "..."]. Never invent selectors.
2. Use observe() to refresh the DOM after interactions.
3. Call exactly one tool per turn."""

USER_TEMPLATE = """\
TASK: {task}

{memory}

CURRENT DOM:
{dom}

TOOLS:
- click(selector, reason) - click element with [CLICK: "selector"]
- scroll(direction, reason) - "down" or "up"
- type_text(selector, text, reason) - type into input
- observe(what) - refresh DOM
- done(understanding, page_type, key_findings) - finish exploration
{last_action}{warnings}
What action will you take next?"""


def explorer_tools() -> list[dict[str, Any]]:
    """Tool definitions for every explorer action, without the ``type`` tag."""
    tools = []
    for name, model in ACTION_MODELS.items():
        schema = model.model_json_schema()
        schema.pop("title", None)
        properties = schema.get("properties", {})
        properties.pop("type", None)
        for prop in properties.values():
            prop.pop("title", None)
        schema["required"] = [r for r in schema.get("required", []) if r != "type"]
        tools.append(tool_definition(name, model.__doc__ or name, schema))
    return tools


def build_prompt(
    task: str,
    memory_summary: str,
    dom: str,
    last_result: str | None = None,
    warnings: list[str] | None = None,
) -> str:
    last_action = f"\nLAST ACTION:\n{last_result}\n" if last_result else ""
    warning_text = "".join(f"\nWARNING: {w}\n" for w in warnings or [])
    return USER_TEMPLATE.format(
        task=task,
        memory=memory_summary,
        dom=dom,
        last_action=last_action,
        warnings=warning_text,
    )


class DecisionAgent:
    """Offers the explorer tools to the model and validates its choice.

    A missing or invalid tool call degrades to ``observe`` rather than
    failing the session.
    """

    def __init__(self, llm: LLMProvider, *, usage: TokenUsage | None = None) -> None:
        self._llm = llm
        self._usage = usage
        self._tools = explorer_tools()

    def decide(
        self,
        task: str,
        memory_summary: str,
        dom: str,
        last_result: str | None = None,
        warnings: list[str] | None = None,
    ) -> ExplorerAction:
        prompt = build_prompt(task, memory_summary, dom, last_result, warnings)
        try:
            result = invoke_tools(
                self._llm,
                system=SYSTEM_PROMPT,
                prompt=prompt,
                tools=self._tools,
                usage=self._usage,
            )
        except ModelInvocationError as e:
            logger.warning("Decision call failed: %s", e)
            return ObserveAction(what="page after failed decision")

        if not result.tool_calls:
            logger.info("Model chose no tool; observing")
            return ObserveAction(what="page")

        call = result.tool_calls[0]
        if len(result.tool_calls) > 1:
            logger.debug("Model returned %d tool calls; using %s", len(result.tool_calls), call.name)
        try:
            return parse_action(call.name, call.arguments)
        except ModelInvocationError as e:
            logger.warning("Rejected model action: %s", e)
            return ObserveAction(what="page after rejected action")
