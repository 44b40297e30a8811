"""Pattern consolidator.

Local pattern matching in ``ExplorationMemory`` is purely textual.  The
consolidator periodically hands a page's observations to the model,
which groups them by element type and effect: clicking five different
listings that all update the details panel is one pattern, clicking the
close button is another.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field

from sitewright.exceptions import ModelInvocationError
from sitewright.explorer.memory import (
    CONFIRMATION_COUNT,
    MAX_PATTERN_SELECTORS,
    BehaviorPattern,
    RawObservation,
    new_pattern_id,
)
from sitewright.llm.base import LLMProvider
from sitewright.llm.structured import TokenUsage, invoke_structured

logger = logging.getLogger(__name__)

DOM_EXCERPT_CHARS = 2000

SYSTEM_PROMPT = """\
You analyze user interactions on a web page to identify and consolidate behavioral patterns.

Group similar actions that produce the same type of effect, while PRESERVING important details.

PATTERN RECOGNITION RULES:
1. Group actions by their EFFECT, not just the selector.
   "click #item-200 -> details panel updated" and "click #item-210 -> details panel updated"
   are the SAME pattern: "clicking listings updates the details panel".
2. Keep DIFFERENT element types STRICTLY separate: "apply button" and "listing" are
   different patterns, as are "close button" and "filter button".
3. Confidence: "testing" when observed once, "confirmed" when observed 2+ times with
   consistent behavior.
4. Be specific about element types: "listing", "filter button", "filter dropdown",
   "close button", "navigation link", "save button", "pagination control", "search input".

Keep effect descriptions specific ("updates the details panel to show title, company and
description", not "updates the panel"). Do NOT over-consolidate: meaningfully different
effects stay separate patterns.

Call consolidate_patterns() with your analysis."""


class ConsolidatedPattern(BaseModel):
    id: Optional[str] = Field(default=None, description="Existing pattern id when updating one")
    element_type: str = Field(description='Element type, e.g. "listing", "filter button"')
    action: str = Field(description='Action, e.g. "click", "scroll"')
    effect: str = Field(description="Specific description of the effect")
    change_type: str = Field(default="", description='Change category, e.g. "content_loaded", "modal_opened"')
    confidence: Literal["testing", "confirmed"] = "testing"
    count: int = Field(default=1, ge=1)
    example_selectors: list[str] = Field(default_factory=list)


class ConsolidationAnswer(BaseModel):
    """Report consolidated behavioral patterns from the observations."""

    patterns: list[ConsolidatedPattern] = Field(default_factory=list)
    uncategorized: list[str] = Field(default_factory=list, description="Observations that fit no pattern yet")


class ConsolidationResult(BaseModel):
    patterns: list[BehaviorPattern] = Field(default_factory=list)
    uncategorized: list[str] = Field(default_factory=list)


def should_consolidate(
    observation_count: int,
    last_run_at: float | None,
    pattern_count: int,
    now: float,
    *,
    every: int = 3,
    interval_sec: float = 30.0,
) -> bool:
    """Decide whether the consolidator is due.

    Due on the first two observations of a page without patterns, on
    every *every*-th observation, and when *interval_sec* has passed
    since the last run with more observations than patterns.
    """
    if observation_count <= 0:
        return False
    if pattern_count == 0 and observation_count >= 2:
        return True
    if observation_count % every == 0:
        return True
    if last_run_at is not None and now - last_run_at > interval_sec and observation_count > pattern_count:
        return True
    return False


def _build_prompt(
    raw_observations: list[str],
    existing_patterns: list[BehaviorPattern],
    latest: RawObservation | None,
    dom_excerpt: str | None,
) -> str:
    parts: list[str] = []
    if existing_patterns:
        parts.append("EXISTING PATTERNS (may need updating):")
        for p in existing_patterns:
            status = "confirmed" if p.confirmed else "testing"
            parts.append(
                f"- [{p.id}] {p.action} {p.target_type} -> {p.effect} "
                f"({status}, {p.count}x, selectors: {', '.join(p.selectors)})"
            )
        parts.append("")

    parts.append("ALL OBSERVATIONS:")
    parts.extend(f"{i}. {obs}" for i, obs in enumerate(raw_observations, 1))
    parts.append("")

    if latest is not None:
        parts.append("LATEST ACTION (just happened):")
        parts.append(f"Action: {latest.action}")
        if latest.selector:
            parts.append(f"Selector: {latest.selector}")
        parts.append(f"Element Type: {latest.target_type}")
        parts.append(f"Effect: {latest.effect}")
        parts.append(f"Change Type: {latest.change_type}")
        parts.append("")

    if dom_excerpt:
        parts.append("CURRENT PAGE CONTEXT (truncated):")
        parts.append(dom_excerpt[:DOM_EXCERPT_CHARS])
        parts.append("...")
        parts.append("")

    parts.append(
        "Analyze all observations and consolidate them into patterns.\n"
        "- Same element type + same effect = same pattern\n"
        "- Update counts and confidence levels\n"
        "- Keep different element types separate\n"
        "- Preserve the most descriptive effect text\n\n"
        "Call consolidate_patterns() with your analysis."
    )
    return "\n".join(parts)


class PatternConsolidator:
    """Regroups a page's observations into behaviour patterns with the model."""

    def __init__(self, llm: LLMProvider, *, usage: TokenUsage | None = None) -> None:
        self._llm = llm
        self._usage = usage

    def consolidate(
        self,
        raw_observations: list[str],
        existing_patterns: list[BehaviorPattern],
        latest: RawObservation | None = None,
        dom_excerpt: str | None = None,
    ) -> ConsolidationResult:
        if not raw_observations and latest is None:
            return ConsolidationResult()

        try:
            answer = invoke_structured(
                self._llm,
                system=SYSTEM_PROMPT,
                prompt=_build_prompt(raw_observations, existing_patterns, latest, dom_excerpt),
                schema=ConsolidationAnswer,
                tool_name="consolidate_patterns",
                usage=self._usage,
            )
        except ModelInvocationError as e:
            logger.warning("Consolidation failed, keeping %d existing pattern(s): %s", len(existing_patterns), e)
            return ConsolidationResult(patterns=[p.model_copy(deep=True) for p in existing_patterns])

        known = {p.id: p for p in existing_patterns}
        patterns: list[BehaviorPattern] = []
        for item in answer.patterns:
            pattern = BehaviorPattern(
                id=item.id if item.id else new_pattern_id(),
                action=item.action,
                target_type=item.element_type,
                effect=item.effect,
                change_type=item.change_type,
                selectors=item.example_selectors[:MAX_PATTERN_SELECTORS],
                count=item.count,
                confirmed=item.count >= CONFIRMATION_COUNT,
            )
            previous = known.get(pattern.id)
            if previous is not None:
                pattern.first_seen = previous.first_seen
            patterns.append(pattern)

        logger.debug(
            "Consolidated %d observation(s) into %d pattern(s)", len(raw_observations), len(patterns)
        )
        return ConsolidationResult(patterns=patterns, uncategorized=answer.uncategorized)

