"""Circuit breakers that keep the explorer out of loops.

Checked after every decision, in order, each seeing the action left by
the previous one:

1. same selector already clicked ``same_selector_click_limit`` times -> observe
2. the click matches a confirmed pattern, its selector was clicked
   ``confirmed_pattern_click_limit`` times and the page has
   ``confirmed_pattern_minimum`` confirmed patterns -> done
3. ``scroll_limit`` scrolls within the last ``scroll_window`` actions -> observe
4. ``consecutive_observe_limit`` observes in a row -> done (degraded)
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass

from sitewright.explorer.actions import (
    ClickAction,
    DoneAction,
    ExplorerAction,
    ObserveAction,
    ScrollAction,
)
from sitewright.explorer.memory import ExplorationMemory

logger = logging.getLogger(__name__)


@dataclass
class BreakerResult:
    action: ExplorerAction
    tripped: list[str]

    @property
    def replaced(self) -> bool:
        return bool(self.tripped)


class CircuitBreakers:
    """Tracks executed actions and overrides decisions that would loop."""

    def __init__(
        self,
        *,
        same_selector_click_limit: int = 5,
        confirmed_pattern_click_limit: int = 4,
        confirmed_pattern_minimum: int = 2,
        scroll_window: int = 10,
        scroll_limit: int = 8,
        consecutive_observe_limit: int = 5,
    ) -> None:
        self.same_selector_click_limit = same_selector_click_limit
        self.confirmed_pattern_click_limit = confirmed_pattern_click_limit
        self.confirmed_pattern_minimum = confirmed_pattern_minimum
        self.scroll_window = scroll_window
        self.scroll_limit = scroll_limit
        self.consecutive_observe_limit = consecutive_observe_limit

        self._history: list[ExplorerAction] = []
        self._clicks: Counter[str] = Counter()

    @classmethod
    def from_settings(cls, settings) -> "CircuitBreakers":
        """Build from an ``ExplorationSettings`` section."""
        return cls(
            same_selector_click_limit=settings.same_selector_click_limit,
            confirmed_pattern_click_limit=settings.confirmed_pattern_click_limit,
            confirmed_pattern_minimum=settings.confirmed_pattern_minimum,
            scroll_window=settings.scroll_window,
            scroll_limit=settings.scroll_limit,
            consecutive_observe_limit=settings.consecutive_observe_limit,
        )

    @property
    def history(self) -> list[ExplorerAction]:
        return list(self._history)

    def click_count(self, selector: str) -> int:
        return self._clicks[selector]

    def consecutive_observes(self) -> int:
        count = 0
        for action in reversed(self._history):
            if not isinstance(action, ObserveAction):
                break
            count += 1
        return count

    def recent_scrolls(self) -> int:
        window = self._history[-self.scroll_window :]
        return sum(1 for action in window if isinstance(action, ScrollAction))

    def record(self, action: ExplorerAction) -> None:
        """Remember an executed action."""
        self._history.append(action)
        if isinstance(action, ClickAction):
            self._clicks[action.selector] += 1

    def check(self, action: ExplorerAction, memory: ExplorationMemory) -> BreakerResult:
        tripped: list[str] = []

        if isinstance(action, ClickAction) and self._clicks[action.selector] >= self.same_selector_click_limit:
            tripped.append(f'"{action.selector}" already clicked {self._clicks[action.selector]} times')
            action = ObserveAction(what="page instead of repeating the same click")

        if isinstance(action, ClickAction):
            pattern = memory.get_matching_pattern("click")
            if (
                pattern is not None
                and self._clicks[action.selector] >= self.confirmed_pattern_click_limit
                and memory.confirmed_pattern_count() >= self.confirmed_pattern_minimum
            ):
                tripped.append(f'click on "{action.selector}" repeats confirmed pattern "{pattern.effect}"')
                page = memory.current_page
                findings = [f"{p.action} {p.target_type} -> {p.effect}" for p in page.patterns if p.confirmed] if page else []
                action = DoneAction(
                    understanding=memory.get_final_understanding(),
                    page_type=memory.current_page_id or "",
                    key_findings=findings,
                )

        if isinstance(action, ScrollAction) and self.recent_scrolls() >= self.scroll_limit:
            tripped.append(f"{self.recent_scrolls()} scrolls in the last {self.scroll_window} actions")
            action = ObserveAction(what="page instead of scrolling again")

        if isinstance(action, ObserveAction) and self.consecutive_observes() >= self.consecutive_observe_limit:
            tripped.append(f"{self.consecutive_observes()} consecutive observes")
            action = DoneAction(
                understanding=memory.get_final_understanding() + "\n(Exploration stopped: no further progress.)",
                page_type=memory.current_page_id or "",
            )

        for reason in tripped:
            logger.info("Circuit breaker: %s", reason)
        return BreakerResult(action=action, tripped=tripped)
