"""Navigator — discovers and repairs page bindings with the language model.

Discovery turns a rendered DOM context into a full ``PageBindings``;
repair turns one failed command plus the current DOM into a small
``{binding_key: value}`` patch.  Both are single structured calls whose
answers are validated here, never trusted as-is.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from sitewright.exceptions import ModelInvocationError
from sitewright.llm.base import LLMProvider
from sitewright.llm.structured import TokenUsage, invoke_structured
from sitewright.recipe.bindings import PageBindings, validate_bindings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

DISCOVERY_SYSTEM_PROMPT = """\
You are a web page analyzer that discovers CSS selectors for listing-page automation \
(job boards, product grids, search results).

Identify selectors for the list of items, the individual repeating items, and the \
details panel that shows an item's full content.

RULES:
1. Use ONLY selectors that EXIST in the provided DOM.
2. Prefer stable data attributes such as [data-id], [data-job-id], [data-testid].
3. For class selectors, use exactly what you see: class="results-list" -> ".results-list".
4. LIST and LIST_ITEM are REQUIRED and must never be empty.
5. The text after "@" on each line is a full structural selector for that element; \
use it for one-off controls (search box, buttons) when no short stable selector exists.

Most listing pages have TWO areas:
- LIST: the container holding ALL item cards, with LIST_ITEM matching each repeating card.
- DETAILS_PANEL: the container where full details appear after clicking an item, \
with DETAILS_CONTENT selectors for content inside it.

Ignore navigation chrome (header links, menus, footers); focus on the main content area. \
Do not confuse a single selected item with the repeating list items.

Answer by calling the report_bindings tool."""

DISCOVERY_USER_TEMPLATE = """\
Analyze this page and find CSS selectors.

URL: {url}
TITLE: {title}
{hints}
DOM ELEMENTS:
{elements}

Report:
- LIST, LIST_ITEM (required)
- DETAILS_PANEL (null when details are shown inline in the item) and DETAILS_CONTENT
- SCROLL_CONTAINER when the list scrolls separately from the page
- NEXT_PAGE_BUTTON / LOAD_MORE_BUTTON when present, and SCROLL_BEHAVIOR \
(infinite, paginated, load_more_button or static)
- SEARCH_BOX when present, and any other useful controls under ELEMENTS (name -> selector)
- wait conditions such as PAGE_LOADED {{"exists": "<LIST selector>"}} and \
LIST_LOADED {{"exists": "<LIST_ITEM selector>"}}, DETAILS_LOADED, NO_MORE_ITEMS
- ITEM_ID: how to derive a unique id per item, e.g. {{"from": "data", "attribute": "data-id"}} \
or {{"from": "href", "selector": "a[href]", "pattern": "/(\\\\d+)"}}"""

FIX_SYSTEM_PROMPT = """\
You are fixing a broken page binding. A command failed because a selector or wait \
condition does not match the current page.

Analyze what exists in the DOM and provide the corrected value. Use only selectors \
present in the DOM; each DOM line ends with a structural selector for that element \
after "@". Answer by calling the report_fix tool."""

FIX_USER_TEMPLATE = """\
A command failed. Fix the binding.

COMMAND: {command}
BINDING: {binding}
CURRENT VALUE: {current_value}
ERROR: {error}

CURRENT DOM:
{dom_context}

What should {binding} be instead? Report only the fixed values, keyed by binding name \
(for example {{"{binding}": "new value or condition object"}})."""

_DEFAULT_ITEM_ID = {"from": "href", "selector": "a[href]", "pattern": r"/(\d+)"}


# ---------------------------------------------------------------------------
# Answer schemas
# ---------------------------------------------------------------------------


class DiscoveredBindings(BaseModel):
    """Selectors and state conditions discovered for one listing page."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    LIST: str = Field(default="", description="Container holding all items")
    LIST_ITEM: str = Field(default="", description="Selector matching each repeating item")
    DETAILS_PANEL: Optional[str] = Field(default=None, description="Details container, null when inline")
    DETAILS_CONTENT: list[str] = Field(default_factory=list, description="Content selectors inside the details")
    SEARCH_BOX: Optional[str] = None
    SCROLL_CONTAINER: Optional[str] = None
    NEXT_PAGE_BUTTON: Optional[str] = None
    LOAD_MORE_BUTTON: Optional[str] = None
    CLOSE_DETAILS_BUTTON: Optional[str] = None
    SCROLL_BEHAVIOR: Optional[str] = Field(default=None, description="infinite | paginated | load_more_button | static")
    CLICK_BEHAVIOR: Optional[str] = Field(default=None, description="shows_panel | navigates | expands | inline")
    ELEMENTS: dict[str, str] = Field(default_factory=dict, description="Other named controls")
    PAGE_LOADED: Optional[Any] = None
    LIST_LOADED: Optional[Any] = None
    LIST_UPDATED: Optional[Any] = None
    DETAILS_LOADED: Optional[Any] = None
    NO_MORE_ITEMS: Optional[Any] = None
    LOADING: Optional[Any] = None
    ITEM_ID: Optional[dict[str, Any]] = None


class BindingFixAnswer(BaseModel):
    """Corrected binding values keyed by binding name."""

    fixes: dict[str, Any] = Field(description='e.g. {"LIST_ITEM": ".result-card"}')

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_mapping(cls, data: Any) -> Any:
        # Models often answer {"LIST_ITEM": "..."} without the envelope
        if isinstance(data, dict) and "fixes" not in data:
            return {"fixes": data}
        return data


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class DiscoveryResult:
    success: bool
    bindings: PageBindings | None = None
    error: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class FixResult:
    success: bool
    fixes: dict[str, Any] | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _hostname(url: str) -> str:
    return (urlparse(url).hostname or "").lower()


def _condition(value: Any) -> dict[str, Any] | None:
    if not value:
        return None
    if isinstance(value, str):
        return {"exists": value}
    if isinstance(value, dict):
        return value
    return None


def normalize_bindings(parsed: dict[str, Any], url: str) -> PageBindings:
    """Fill identity fields and defaults on a raw discovery answer.

    Raises:
        pydantic.ValidationError: The answer cannot form ``PageBindings``
            even after defaults are applied.
    """
    host = _hostname(url)
    list_item = parsed.get("LIST_ITEM") or ""
    details_panel = parsed.get("DETAILS_PANEL") or None

    data: dict[str, Any] = {
        key: value
        for key, value in parsed.items()
        if value is not None and value != "" and value != [] and value != {}
    }
    data["id"] = parsed.get("id") or (host.replace(".", "_") if host else "bindings")
    data["urlPattern"] = parsed.get("urlPattern") or host or url
    data["LIST"] = parsed.get("LIST") or ""
    data["LIST_ITEM"] = list_item

    if not parsed.get("CLICK_BEHAVIOR"):
        data["CLICK_BEHAVIOR"] = "shows_panel" if details_panel else "inline"
    if not parsed.get("DETAILS_CONTENT"):
        logger.warning("DETAILS_CONTENT was empty - model did not provide content selectors")

    for key in ("PAGE_LOADED", "LIST_LOADED", "LIST_UPDATED", "DETAILS_LOADED", "NO_MORE_ITEMS", "LIST_EMPTY", "LOADING"):
        cond = _condition(parsed.get(key))
        if cond is None:
            data.pop(key, None)
        else:
            data[key] = cond

    data.setdefault("PAGE_LOADED", {"exists": "body"})
    if list_item:
        data.setdefault("LIST_LOADED", {"exists": list_item})
        data.setdefault("LIST_UPDATED", {"countChanged": list_item})
    data.setdefault("NO_MORE_ITEMS", {"exists": ".no-results"})

    item_id = parsed.get("ITEM_ID")
    if isinstance(item_id, dict) and item_id:
        data["ITEM_ID"] = {"from": item_id.get("from") or "href", **{k: v for k, v in item_id.items() if k != "from"}}
    else:
        data["ITEM_ID"] = dict(_DEFAULT_ITEM_ID)

    return PageBindings.model_validate(data)


# ---------------------------------------------------------------------------
# Navigator
# ---------------------------------------------------------------------------


class Navigator:
    """Discovers page bindings from a DOM context and repairs broken ones.

    Args:
        llm: The language model used for both calls.
        fix_context_max_chars: Cap on the DOM context sent with a fix request.
        dom_context_max_chars: Cap on the DOM context sent for discovery.
    """

    def __init__(
        self,
        llm: LLMProvider,
        *,
        fix_context_max_chars: int = 5_000,
        dom_context_max_chars: int = 30_000,
    ) -> None:
        self._llm = llm
        self._fix_context_max_chars = fix_context_max_chars
        self._dom_context_max_chars = dom_context_max_chars

    def discover_bindings(
        self,
        dom_context: str,
        url: str,
        hints: str | None = None,
        *,
        title: str = "",
    ) -> DiscoveryResult:
        """Derive a full set of bindings for the page at *url*."""
        usage = TokenUsage()
        logger.info("Discovering bindings for %s (%d chars of DOM context)", url, len(dom_context))

        prompt = DISCOVERY_USER_TEMPLATE.format(
            url=url,
            title=title,
            hints=f"\nEXPLORATION NOTES:\n{hints}\n" if hints else "",
            elements=dom_context[: self._dom_context_max_chars],
        )
        try:
            answer = invoke_structured(
                self._llm,
                system=DISCOVERY_SYSTEM_PROMPT,
                prompt=prompt,
                schema=DiscoveredBindings,
                tool_name="report_bindings",
                usage=usage,
            )
        except ModelInvocationError as e:
            logger.error("Binding discovery failed: %s", e)
            return DiscoveryResult(success=False, error=f"Model call failed: {e}", usage=usage)

        parsed = answer.model_dump(exclude_none=True)
        if not parsed.get("LIST") or not parsed.get("LIST_ITEM"):
            logger.error("Model returned empty critical bindings - LIST or LIST_ITEM is empty")
            return DiscoveryResult(success=False, error="Discovered bindings lack LIST or LIST_ITEM", usage=usage)

        try:
            bindings = normalize_bindings(parsed, url)
        except ValidationError as e:
            logger.error("Discovered bindings do not validate: %s", e)
            return DiscoveryResult(success=False, error=f"Discovered bindings are malformed: {e.error_count()} errors", usage=usage)

        report = validate_bindings(bindings)
        if report.errors:
            logger.warning("Binding validation errors: %s", report.errors)
        if report.warnings:
            logger.info("Binding validation warnings: %s", report.warnings)

        logger.info(
            "Bindings discovered: id=%s LIST=%s LIST_ITEM=%s DETAILS_PANEL=%s CLICK_BEHAVIOR=%s",
            bindings.id,
            bindings.list_container,
            bindings.list_item,
            bindings.details_panel,
            bindings.click_behavior.value,
        )
        return DiscoveryResult(success=True, bindings=bindings, usage=usage)

    def fix_binding(self, request: Any) -> FixResult:
        """Propose a replacement value for ``request.binding``.

        *request* is a ``BindingFixRequest`` from the executor.
        """
        logger.info("Fixing binding %s", request.binding)
        command = request.command
        command_text = (
            json.dumps(command.model_dump(mode="json", by_alias=True)) if isinstance(command, BaseModel) else str(command)
        )
        prompt = FIX_USER_TEMPLATE.format(
            command=command_text,
            binding=request.binding,
            current_value=json.dumps(request.current_value, default=str),
            error=request.error,
            dom_context=(request.dom_context or "")[: self._fix_context_max_chars],
        )
        try:
            answer = invoke_structured(
                self._llm,
                system=FIX_SYSTEM_PROMPT,
                prompt=prompt,
                schema=BindingFixAnswer,
                tool_name="report_fix",
            )
        except ModelInvocationError as e:
            logger.error("Binding fix failed: %s", e)
            return FixResult(success=False, error=str(e))

        fixes = {k: v for k, v in answer.fixes.items() if v not in (None, "")}
        if not fixes:
            return FixResult(success=False, error="Model proposed no fix")
        logger.info("Binding fixed: %s -> %s", request.binding, fixes)
        return FixResult(success=True, fixes=fixes)
