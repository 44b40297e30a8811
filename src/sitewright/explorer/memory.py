"""Exploration memory graph.

One ``ExplorationMemory`` per exploration session.  Pages are nodes keyed
by a semantic page type (``job_search``, ``job_details``...), connected by
directed edges labelled with the action that caused the transition.
Each page also keeps the raw observations recorded on it and the
behaviour patterns learned from them.

A behaviour pattern groups observations sharing the same action, change
type and (normalised) effect.  It is *confirmed* once it has been seen
twice.
"""

from __future__ import annotations

import logging
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

MAX_PATTERN_SELECTORS = 3
CONFIRMATION_COUNT = 2

# Roles reported by get_discovered_selectors, in output order.
DISCOVERED_ROLES = (
    "filter_button",
    "apply_button",
    "job_listings",
    "search_input",
    "pagination",
    "close_button",
)

# target_type substrings that map a confirmed pattern onto a role.
_ROLE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "filter_button": ("filter", "dropdown", "facet"),
    "apply_button": ("apply",),
    "job_listings": ("listing", "job", "card", "result", "item"),
    "search_input": ("search",),
    "pagination": ("pagination", "next page", "page number", "load more"),
    "close_button": ("close", "dismiss"),
}

# Effects sharing one of these phrases are the same effect.
_KEY_PHRASES = (
    "details panel updated",
    "details pane updated",
    "job details",
    "modal opened",
    "modal closed",
    "filter applied",
    "content loaded",
    "navigated",
)

_QUOTED_RE = re.compile(r"\"[^\"]*\"|'[^']*'")
_QUALIFIER_RE = re.compile(r"\b(?:for|at)\s+\S+|\bto\s+show\s+\S+", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_effect(effect: str) -> str:
    """Reduce an effect description to its comparable core.

    Strips quoted strings and the qualifiers "for X", "at Y" and
    "to show X", collapses whitespace and lowercases.
    """
    text = _QUOTED_RE.sub("", effect)
    text = _QUALIFIER_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip().lower()


def effects_similar(a: str, b: str) -> bool:
    """True when two effect descriptions describe the same behaviour."""
    left, right = normalize_effect(a), normalize_effect(b)
    if left == right:
        return True
    if left and right and (left in right or right in left):
        return True
    return any(phrase in left and phrase in right for phrase in _KEY_PHRASES)


def new_pattern_id() -> str:
    return f"pattern_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class BehaviorPattern(BaseModel):
    """A repeated cause/effect relation observed on one page."""

    id: str = Field(default_factory=new_pattern_id)
    action: str
    target_type: str = ""
    effect: str = ""
    change_type: str = ""
    selectors: list[str] = Field(default_factory=list)
    count: int = 1
    confirmed: bool = False
    first_seen: datetime = Field(default_factory=_utcnow)

    def matches(self, action: str, change_type: str, effect: str) -> bool:
        return (
            self.action == action
            and self.change_type == change_type
            and effects_similar(self.effect, effect)
        )

    def add_selector(self, selector: str | None) -> None:
        if selector and selector not in self.selectors and len(self.selectors) < MAX_PATTERN_SELECTORS:
            self.selectors.append(selector)


class RawObservation(BaseModel):
    """One recorded action and its classified effect."""

    action: str
    selector: Optional[str] = None
    effect: str
    target_type: str = ""
    change_type: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)

    def describe(self) -> str:
        target = f' "{self.selector}"' if self.selector else ""
        return f"{self.action}{target} -> {self.effect} [{self.change_type}]"


class Edge(BaseModel):
    from_page: str
    to_page: str
    action: str
    selector: Optional[str] = None


class PageNode(BaseModel):
    id: str
    understanding: str = ""
    raw_observations: list[RawObservation] = Field(default_factory=list)
    patterns: list[BehaviorPattern] = Field(default_factory=list)
    incoming_edges: list[Edge] = Field(default_factory=list)
    outgoing_edges: list[Edge] = Field(default_factory=list)
    visit_count: int = 1
    last_visited_at: datetime = Field(default_factory=_utcnow)
    last_url: str = ""


class Classification(BaseModel):
    """What the memory needs to know about one analysed action.

    ``came_from`` is set only when the action changed the URL.
    """

    page_type: str
    understanding: str = ""
    url: str = ""
    is_new_page_type: bool = False
    came_from: Optional[str] = None
    via_action: Optional[str] = None
    selector: Optional[str] = None


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class ExplorationMemory:
    """Page graph plus per-page observations and behaviour patterns."""

    def __init__(self) -> None:
        self._pages: dict[str, PageNode] = {}
        self._path: list[str] = []
        self.current_page_id: str | None = None
        self._consolidated_counts: dict[str, int] = {}

    @property
    def pages(self) -> dict[str, PageNode]:
        return self._pages

    @property
    def navigation_path(self) -> list[str]:
        return list(self._path)

    @property
    def current_page(self) -> PageNode | None:
        if self.current_page_id is None:
            return None
        return self._pages.get(self.current_page_id)

    def known_page_types(self) -> list[str]:
        return list(self._pages)

    def _visit(self, page_id: str) -> None:
        self.current_page_id = page_id
        if page_id not in self._path:
            self._path.append(page_id)

    # ------------------------------------------------------------------
    # Graph updates
    # ------------------------------------------------------------------

    def initialize_page(self, page_id: str, understanding: str, url: str) -> PageNode:
        """Create (or revisit) the starting page of a session."""
        page = self._pages.get(page_id)
        if page is None:
            page = PageNode(id=page_id, understanding=understanding, last_url=url)
            self._pages[page_id] = page
        else:
            page.visit_count += 1
            page.last_visited_at = _utcnow()
            page.last_url = url
        self._visit(page_id)
        return page

    def update_from_classification(self, result: Classification, previous_url: str | None = None) -> PageNode:
        """Fold one change classification into the graph.

        A node is created only for a page type not seen before; arriving
        on a known page bumps its visit count and keeps the new
        understanding as an observation.
        """
        page_id = result.page_type
        page = self._pages.get(page_id)

        if page is None:
            page = PageNode(id=page_id, understanding=result.understanding, last_url=result.url)
            self._pages[page_id] = page
            logger.info("New page type discovered: %s", page_id)
        else:
            page.visit_count += 1
            page.last_visited_at = _utcnow()
            if result.url:
                page.last_url = result.url
            if result.understanding and page_id != self.current_page_id:
                page.raw_observations.append(
                    RawObservation(action="revisit", effect=result.understanding, change_type="navigation")
                )

        if result.came_from and result.came_from != page_id and result.came_from in self._pages:
            action = result.via_action or "unknown"
            edge = Edge(from_page=result.came_from, to_page=page_id, action=action, selector=result.selector)
            source = self._pages[result.came_from]
            if not any(e.to_page == page_id and e.action == action for e in source.outgoing_edges):
                source.outgoing_edges.append(edge)
                page.incoming_edges.append(edge)
            logger.debug("Edge %s -> %s via %s (from %s)", result.came_from, page_id, action, previous_url)

        self._visit(page_id)
        return page

    def add_raw_observation(self, data: RawObservation | dict[str, Any], page_id: str | None = None) -> BehaviorPattern | None:
        """Record an observation on a page and fold it into that page's patterns.

        Returns the pattern the observation was counted against, or
        ``None`` when there is no page to record on.
        """
        observation = data if isinstance(data, RawObservation) else RawObservation.model_validate(data)
        page = self._pages.get(page_id or self.current_page_id or "")
        if page is None:
            logger.warning("Observation dropped, no current page: %s", observation.describe())
            return None

        page.raw_observations.append(observation)

        for pattern in page.patterns:
            if pattern.matches(observation.action, observation.change_type, observation.effect):
                pattern.count += 1
                pattern.confirmed = pattern.count >= CONFIRMATION_COUNT
                pattern.add_selector(observation.selector)
                if not pattern.target_type and observation.target_type:
                    pattern.target_type = observation.target_type
                return pattern

        pattern = BehaviorPattern(
            action=observation.action,
            target_type=observation.target_type,
            effect=observation.effect,
            change_type=observation.change_type,
        )
        pattern.add_selector(observation.selector)
        page.patterns.append(pattern)
        return pattern

    def update_patterns_from_consolidation(self, patterns: list[BehaviorPattern], page_id: str | None = None) -> None:
        """Replace a page's patterns with consolidated ones.

        ``first_seen`` survives for patterns whose id already existed;
        ``confirmed`` is recomputed from the count.
        """
        page = self._pages.get(page_id or self.current_page_id or "")
        if page is None:
            return

        previous = {p.id: p for p in page.patterns}
        merged: list[BehaviorPattern] = []
        for incoming in patterns:
            pattern = incoming.model_copy(deep=True)
            if pattern.id in previous:
                pattern.first_seen = previous[pattern.id].first_seen
            pattern.selectors = pattern.selectors[:MAX_PATTERN_SELECTORS]
            pattern.confirmed = pattern.count >= CONFIRMATION_COUNT
            merged.append(pattern)
        page.patterns = merged
        self._consolidated_counts[page.id] = len(page.raw_observations)

    def update_page_summary(self, page_id: str, summary: str) -> None:
        """Set a page's understanding and discard its raw observations."""
        page = self._pages.get(page_id)
        if page is None:
            return
        page.understanding = summary
        page.raw_observations = []
        self._consolidated_counts[page_id] = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_matching_pattern(self, action: str, target_type: str | None = None) -> BehaviorPattern | None:
        """A confirmed pattern on the current page for *action*, if any."""
        page = self.current_page
        if page is None:
            return None
        for pattern in page.patterns:
            if not pattern.confirmed or pattern.action != action:
                continue
            if target_type and target_type.lower() not in pattern.target_type.lower():
                continue
            return pattern
        return None

    def confirmed_pattern_count(self, page_id: str | None = None) -> int:
        page = self._pages.get(page_id or self.current_page_id or "")
        if page is None:
            return 0
        return sum(1 for p in page.patterns if p.confirmed)

    def unconsolidated_count(self, page_id: str | None = None) -> int:
        """Observations recorded on a page since its last consolidation."""
        page = self._pages.get(page_id or self.current_page_id or "")
        if page is None:
            return 0
        return max(len(page.raw_observations) - self._consolidated_counts.get(page.id, 0), 0)

    def get_discovered_selectors(self) -> dict[str, list[str]]:
        """Selectors of confirmed patterns grouped by element role."""
        found: dict[str, list[str]] = {role: [] for role in DISCOVERED_ROLES}
        for page in self._pages.values():
            for pattern in page.patterns:
                if not pattern.confirmed:
                    continue
                target = pattern.target_type.lower()
                for role in DISCOVERED_ROLES:
                    if any(keyword in target for keyword in _ROLE_KEYWORDS[role]):
                        for selector in pattern.selectors:
                            if selector not in found[role]:
                                found[role].append(selector)
                        break
        return {role: selectors for role, selectors in found.items() if selectors}

    def get_summary(self) -> str:
        """Text digest of the graph for the decision prompt."""
        if not self._pages:
            return "No pages explored yet."

        lines = ["EXPLORED PAGES:"]
        for page_id, page in self._pages.items():
            lines.append("")
            lines.append(f"[{page_id}]: {page.understanding}")
            if page.patterns:
                lines.append("  LEARNED BEHAVIORS:")
                for pattern in page.patterns:
                    status = "CONFIRMED" if pattern.confirmed else "testing"
                    examples = f" (e.g., {', '.join(pattern.selectors[:2])})" if pattern.selectors else ""
                    lines.append(
                        f"    [{status}] {pattern.action} {pattern.target_type}{examples}"
                        f" -> {pattern.effect} ({pattern.count}x)"
                    )
                explored = sorted({p.target_type for p in page.patterns if p.confirmed and p.target_type})
                if explored:
                    lines.append(f"  ALREADY EXPLORED: {', '.join(explored)}")
                    lines.append("  TIP: Try different element types or call done() if you understand the page.")
            for edge in page.incoming_edges:
                lines.append(f'  <- from [{edge.from_page}] via "{edge.action}"')
            for edge in page.outgoing_edges:
                lines.append(f'  -> leads to [{edge.to_page}] via "{edge.action}"')

        lines.append(f"CURRENT PAGE: [{self.current_page_id or 'unknown'}]")
        lines.append(f"PATH: {' -> '.join(self._path)}")
        return "\n".join(lines)

    def get_final_understanding(self) -> str:
        lines = ["SITE UNDERSTANDING:", ""]
        for page_id, page in self._pages.items():
            lines.append(f"## {page_id}")
            lines.append(page.understanding)
            if page.outgoing_edges:
                lines.append("Navigation:")
                for edge in page.outgoing_edges:
                    lines.append(f'  - "{edge.action}" -> {edge.to_page}')
            lines.append("")
        return "\n".join(lines)
