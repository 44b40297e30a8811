"""Change analyzer: classifies what an explorer action did to the page.

The model compares the page before and after an action.  Whether the
URL changed is a fact established here, not by the model: a same-URL
answer claiming navigation is downgraded using the DOM size difference.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from sitewright.exceptions import ModelInvocationError
from sitewright.llm.base import LLMProvider
from sitewright.llm.structured import TokenUsage, invoke_structured

logger = logging.getLogger(__name__)

# |Δ len(DOM)| thresholds for content_loaded
SAME_URL_CONTENT_THRESHOLD = 500
FALLBACK_CONTENT_THRESHOLD = 1000


class ChangeType(str, Enum):
    NAVIGATION = "navigation"
    MODAL_OPENED = "modal_opened"
    MODAL_CLOSED = "modal_closed"
    CONTENT_LOADED = "content_loaded"
    CONTENT_REMOVED = "content_removed"
    SELECTION_CHANGED = "selection_changed"
    NO_CHANGE = "no_change"
    MINOR_CHANGE = "minor_change"


# Changes too small to be worth remembering
IGNORED_CHANGES = {ChangeType.NO_CHANGE, ChangeType.MINOR_CHANGE}


SYSTEM_PROMPT = """\
You analyze what happened after a user action on a web page.

IMPORTANT: I will tell you if the URL changed. Trust that information.
- If URL is "(unchanged)", do NOT say navigation happened.
- If URL actually changed, it IS navigation.

Compare the BEFORE and AFTER DOM states and determine what specifically changed:
- Modal/dialog opened or closed
- Panel expanded or collapsed
- Content loaded in existing area
- Selection changed (e.g., different item highlighted)
- Nothing visible changed

Be specific and actionable. Your analysis helps decide what to do next."""

USER_TEMPLATE = """\
ACTION: {action}

URL: {url_line}
Current page type: {current_page_type}
Known page types: [{known_page_types}]

BEFORE DOM:
{before}

AFTER DOM:
{after}
{appeared}
Analyze what changed and call analyze_change() with your findings."""


class ChangeReport(BaseModel):
    """Report what changed after the action."""

    description: str = Field(description="Human-readable description of what changed (1-2 sentences)")
    element_type: str = Field(
        default="unknown element",
        description='Short label for the element interacted with, e.g. "job listing", "filter dropdown", "close button"',
    )
    change_type: ChangeType = Field(description="Category of change")
    page_type: str = Field(description='Semantic name for this page type, e.g. "job_search", "job_details"')
    is_new_page_type: bool = Field(
        default=False, description="True only if URL changed AND this is a fundamentally different page type"
    )
    page_understanding: str = Field(default="", description="What this page offers and what actions are possible")


class ChangeAnalysis(BaseModel):
    description: str
    element_type: str = "unknown element"
    change_type: ChangeType
    url_changed: bool = False
    is_new_page_type: bool = False
    page_type: str = "unknown"
    page_understanding: str = ""
    came_from: Optional[str] = None
    via_action: Optional[str] = None

    @property
    def is_significant(self) -> bool:
        return self.change_type not in IGNORED_CHANGES


class ChangeAnalyzer:
    """Asks the model to classify a before/after pair of page states.

    Args:
        llm: Provider used for the classification.
        max_dom_chars: Each DOM state is cut to this many characters in
            the prompt.  Size heuristics always use the full states.
    """

    def __init__(self, llm: LLMProvider, *, max_dom_chars: int = 15_000, usage: TokenUsage | None = None) -> None:
        self._llm = llm
        self._max_dom_chars = max_dom_chars
        self._usage = usage

    def analyze(
        self,
        action: str,
        before_url: str,
        after_url: str,
        before_state: str,
        after_state: str,
        known_page_types: list[str],
        current_page_type: str | None = None,
        *,
        appeared: str = "",
    ) -> ChangeAnalysis:
        """Classify the change; *appeared* lists interactive elements new since the action."""
        url_changed = before_url != after_url
        size_diff = abs(len(after_state) - len(before_state))

        prompt = USER_TEMPLATE.format(
            action=action,
            url_line=f"{before_url} -> {after_url}" if url_changed else f"{before_url} (unchanged)",
            current_page_type=current_page_type or "unknown",
            known_page_types=", ".join(known_page_types) or "(none yet)",
            before=before_state[: self._max_dom_chars],
            after=after_state[: self._max_dom_chars],
            appeared=f"\nNEW INTERACTIVE ELEMENTS (absent before the action):\n{appeared}\n" if appeared else "",
        )

        try:
            report = invoke_structured(
                self._llm,
                system=SYSTEM_PROMPT,
                prompt=prompt,
                schema=ChangeReport,
                tool_name="analyze_change",
                usage=self._usage,
            )
        except ModelInvocationError as e:
            logger.warning("Change analysis failed, using size heuristic: %s", e)
            return self._fallback(action, after_url, url_changed, size_diff, current_page_type)

        change_type = report.change_type
        is_new_page_type = report.is_new_page_type
        description = report.description
        page_type = report.page_type or current_page_type or "unknown"

        if not url_changed:
            if change_type == ChangeType.NAVIGATION:
                change_type = (
                    ChangeType.CONTENT_LOADED if size_diff > SAME_URL_CONTENT_THRESHOLD else ChangeType.NO_CHANGE
                )
                logger.debug("Same-URL navigation claim downgraded to %s", change_type.value)
            is_new_page_type = False
            # Same URL stays on the same page node
            if current_page_type:
                page_type = current_page_type
            if change_type == ChangeType.NO_CHANGE:
                description = "No visible change to the page"

        return ChangeAnalysis(
            description=description,
            element_type=report.element_type or "unknown element",
            change_type=change_type,
            url_changed=url_changed,
            is_new_page_type=is_new_page_type,
            page_type=page_type,
            page_understanding=report.page_understanding,
            came_from=current_page_type if url_changed else None,
            via_action=action,
        )

    @staticmethod
    def _fallback(
        action: str,
        after_url: str,
        url_changed: bool,
        size_diff: int,
        current_page_type: str | None,
    ) -> ChangeAnalysis:
        if url_changed:
            change_type = ChangeType.NAVIGATION
        elif size_diff > FALLBACK_CONTENT_THRESHOLD:
            change_type = ChangeType.CONTENT_LOADED
        else:
            change_type = ChangeType.NO_CHANGE
        return ChangeAnalysis(
            description=f"Navigated to {after_url}" if url_changed else "Action completed",
            change_type=change_type,
            url_changed=url_changed,
            is_new_page_type=False,
            page_type=current_page_type or "unknown",
            page_understanding="Unable to analyze",
            came_from=current_page_type if url_changed else None,
            via_action=action,
        )
