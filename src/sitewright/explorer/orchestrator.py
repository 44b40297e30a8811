"""Exploration orchestrator — learns how an unfamiliar site behaves.

Each step:

1. capture the page and render it with ``[CLICK: "selector"]`` hints
2. consolidate the current page's observations when due
3. ask the decision agent for one action; selectors absent from the
   rendering are rejected and the action becomes ``observe``
4. apply the circuit breakers
5. execute the action, capture again, flag elements that appeared and
   classify the change
6. record significant changes in the memory graph

The loop ends on ``done`` (model or breaker), on the step budget, on the
stop event, or when the browser goes away.  Every ending returns an
``ExplorationResult`` carrying whatever pages were learned.

Model calls are blocking HTTP requests; they run in worker threads via
``asyncio.to_thread`` so other sessions sharing the loop keep running.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from sitewright.dom.identity import clickable_identities, mark_new_elements
from sitewright.dom.render import clickable_selectors, render_for_explorer, render_new_elements
from sitewright.dom.snapshot import capture
from sitewright.driver.base import PageDriver
from sitewright.exceptions import DriverDisconnectedError
from sitewright.explorer.actions import (
    ClickAction,
    DoneAction,
    ExplorerAction,
    ObserveAction,
    TypeTextAction,
    describe_action,
)
from sitewright.explorer.breakers import CircuitBreakers
from sitewright.explorer.change_analyzer import ChangeAnalysis, ChangeAnalyzer
from sitewright.explorer.consolidator import PatternConsolidator, should_consolidate
from sitewright.explorer.decision import DecisionAgent
from sitewright.explorer.memory import (
    CONFIRMATION_COUNT,
    Classification,
    ExplorationMemory,
    PageNode,
    RawObservation,
)
from sitewright.explorer.summarizer import PageSummarizer
from sitewright.explorer.tool_executor import ToolExecutor
from sitewright.llm.base import LLMProvider
from sitewright.llm.structured import TokenUsage

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    DECIDING = "deciding"
    ACTING = "acting"
    ANALYZING = "analyzing"
    CONSOLIDATING = "consolidating"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = {OrchestratorState.DONE, OrchestratorState.FAILED}


class ExplorationEvent(str, Enum):
    """Kinds passed to the ``on_event`` callback."""

    STATE_CHANGED = "state_changed"
    STEP = "step"
    ACTION = "action"
    ANALYSIS = "analysis"
    FINISH = "finish"


EventCallback = Callable[[str, dict[str, Any]], None]


class ExplorationStep(BaseModel):
    step: int
    action: dict[str, Any]
    reason: str = ""
    result: str = ""
    breakers: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ExplorationResult(BaseModel):
    """Terminal artifact of one exploration session."""

    success: bool
    pages: dict[str, PageNode] = Field(default_factory=dict)
    navigation_path: list[str] = Field(default_factory=list)
    final_understanding: str = ""
    key_elements: dict[str, list[str]] = Field(default_factory=dict)
    steps: list[ExplorationStep] = Field(default_factory=list)
    logs: list[str] = Field(default_factory=list)
    error: Optional[str] = None


def page_id_for_url(url: str) -> str:
    """Initial page id: the hostname with dots replaced by underscores."""
    host = urlparse(url).hostname or ""
    return host.replace(".", "_") or "start_page"


class ExplorationOrchestrator:
    """Drives one exploration session against one browser page.

    Args:
        driver: Browser page to explore.
        llm: Provider for decisions, change analysis, consolidation and
            summaries.  Individual agents may be injected instead.
        settings: ``ExplorationSettings`` section; defaults to the global
            settings.
        on_event: Called with ``(kind, payload)`` as the session
            progresses.  Callback errors are logged and ignored.
    """

    def __init__(
        self,
        driver: PageDriver,
        llm: LLMProvider,
        *,
        settings: Any = None,
        decision: DecisionAgent | None = None,
        analyzer: ChangeAnalyzer | None = None,
        consolidator: PatternConsolidator | None = None,
        summarizer: PageSummarizer | None = None,
        settle_delay_sec: float = 0.5,
        on_event: EventCallback | None = None,
    ) -> None:
        if settings is None:
            from sitewright.settings import get_settings

            settings = get_settings().exploration
        self._settings = settings
        self._driver = driver
        self.usage = TokenUsage()
        self._decision = decision or DecisionAgent(llm, usage=self.usage)
        self._analyzer = analyzer or ChangeAnalyzer(
            llm, max_dom_chars=settings.analyzer_dom_max_chars, usage=self.usage
        )
        self._consolidator = consolidator or PatternConsolidator(llm, usage=self.usage)
        self._summarizer = summarizer or PageSummarizer(llm, usage=self.usage)
        self._tools = ToolExecutor(driver, settle_delay_sec=settle_delay_sec)
        self._breakers = CircuitBreakers.from_settings(settings)
        self._on_event = on_event

        self.memory = ExplorationMemory()
        self._state = OrchestratorState.DECIDING
        self._steps: list[ExplorationStep] = []
        self._logs: list[str] = []
        self._last_consolidation = time.monotonic()

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def steps(self) -> list[ExplorationStep]:
        return list(self._steps)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _log(self, level: int, msg: str, *args: Any) -> None:
        logger.log(level, msg, *args)
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        self._logs.append(f"[{stamp}] " + (msg % args if args else msg))

    def _emit(self, kind: ExplorationEvent, payload: dict[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(kind.value, payload)
        except Exception as exc:
            logger.warning("Exploration event callback error (%s): %s", kind.value, exc)

    def _transition(self, new_state: OrchestratorState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        logger.debug("Explorer state %s -> %s", old_state.value, new_state.value)
        self._emit(ExplorationEvent.STATE_CHANGED, {"old_state": old_state.value, "new_state": new_state.value})

    def _record_step(self, step: int, action: ExplorerAction, result: str, breakers: list[str]) -> None:
        entry = ExplorationStep(
            step=step,
            action=action.model_dump(mode="json"),
            reason=getattr(action, "reason", "") or getattr(action, "what", ""),
            result=result,
            breakers=breakers,
        )
        self._steps.append(entry)
        self._emit(ExplorationEvent.STEP, entry.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def explore(self, task: str, *, stop_event: asyncio.Event | None = None) -> ExplorationResult:
        """Explore the page currently loaded in the driver.

        Args:
            task: What the exploration should learn, e.g. "find how to
                browse and open job listings".
            stop_event: Checked between steps; when set, the session ends
                with ``success=False`` and the partial graph.
        """
        max_steps = self._settings.max_steps
        self._log(logging.INFO, "Starting exploration (max %d steps): %s", max_steps, task)

        try:
            snapshot = await capture(self._driver)
            url = snapshot.url or await self._driver.url()
            self.memory.initialize_page(page_id_for_url(url), task, url)
            rendered = render_for_explorer(snapshot, self._settings.render_max_chars)
            seen = clickable_identities(snapshot)
            last_result: str | None = None
            tripped_last: list[str] = []

            for step in range(1, max_steps + 1):
                if stop_event is not None and stop_event.is_set():
                    return self._fail("Exploration stopped")
                if not await self._driver.is_connected():
                    raise DriverDisconnectedError("Browser connection lost")

                await self._maybe_consolidate(rendered)

                self._transition(OrchestratorState.DECIDING)
                action = await asyncio.to_thread(
                    self._decision.decide,
                    task,
                    self.memory.get_summary(),
                    rendered,
                    last_result,
                    self._warnings(tripped_last),
                )
                action, rejection = self._validate_selector(action, rendered)
                checked = self._breakers.check(action, self.memory)
                action = checked.action
                tripped = ([rejection] if rejection else []) + checked.tripped
                tripped_last = checked.tripped

                self._log(logging.INFO, "Step %d/%d: %s", step, max_steps, describe_action(action))
                self._emit(ExplorationEvent.ACTION, {"step": step, "action": action.model_dump(mode="json")})

                if isinstance(action, DoneAction):
                    self._breakers.record(action)
                    self._record_step(step, action, "done", tripped)
                    return await self._finish(action)

                self._transition(OrchestratorState.ACTING)
                outcome = await self._tools.execute(action)
                self._breakers.record(action)

                after = await capture(self._driver)
                mark_new_elements(after, seen)
                seen = clickable_identities(after)
                after_url = after.url or await self._driver.url()
                after_rendered = render_for_explorer(after, self._settings.render_max_chars)

                if isinstance(action, ObserveAction) or not outcome.success:
                    last_result = outcome.observation if outcome.success else f"{outcome.observation} -> FAILED"
                else:
                    self._transition(OrchestratorState.ANALYZING)
                    analysis = await asyncio.to_thread(
                        self._analyzer.analyze,
                        describe_action(action),
                        url,
                        after_url,
                        rendered,
                        after_rendered,
                        self.memory.known_page_types(),
                        self.memory.current_page_id,
                        appeared=render_new_elements(after),
                    )
                    self._emit(ExplorationEvent.ANALYSIS, {"step": step, **analysis.model_dump(mode="json")})
                    last_result = self._record_analysis(action, analysis, outcome.observation, after_url)

                self._record_step(step, action, last_result, tripped)
                rendered, url = after_rendered, after_url

            self._log(logging.WARNING, "Max exploration steps (%d) reached", max_steps)
            return self._fail(f"Max exploration steps ({max_steps}) reached")

        except DriverDisconnectedError as e:
            self._log(logging.ERROR, "Browser lost during exploration: %s", e)
            return self._fail(str(e) or "Browser connection lost")
        except Exception as e:
            logger.exception("Exploration failed: %s", e)
            return self._fail(f"exception: {e}")

    # ------------------------------------------------------------------
    # Step helpers
    # ------------------------------------------------------------------

    def _validate_selector(self, action: ExplorerAction, rendered: str) -> tuple[ExplorerAction, str | None]:
        if not isinstance(action, (ClickAction, TypeTextAction)):
            return action, None
        if action.selector in clickable_selectors(rendered):
            return action, None
        reason = f'selector "{action.selector}" is not on the page'
        self._log(logging.INFO, "Rejected action: %s", reason)
        return ObserveAction(what="page; the chosen selector was not present"), reason

    def _warnings(self, tripped_last: list[str]) -> list[str]:
        warnings: list[str] = []
        confirmed = self.memory.confirmed_pattern_count()
        if confirmed >= 1:
            warnings.append(
                f"You have {confirmed} confirmed pattern(s). Explore DIFFERENT elements or finish with done()."
            )
        for reason in tripped_last:
            warnings.append(f"Loop detected ({reason}). Try something different or call done().")
        return warnings

    def _record_analysis(
        self,
        action: ExplorerAction,
        analysis: ChangeAnalysis,
        observation: str,
        after_url: str,
    ) -> str:
        summary = f"{observation}\nResult: {analysis.description} [{analysis.change_type.value}]"
        if not analysis.is_significant:
            return summary

        selector = getattr(action, "selector", None)
        pattern = self.memory.add_raw_observation(
            RawObservation(
                action=action.type,
                selector=selector,
                effect=analysis.description,
                target_type=analysis.element_type,
                change_type=analysis.change_type.value,
            )
        )
        if analysis.url_changed and analysis.page_type != self.memory.current_page_id:
            self.memory.update_from_classification(
                Classification(
                    page_type=analysis.page_type,
                    understanding=analysis.page_understanding,
                    url=after_url,
                    is_new_page_type=analysis.is_new_page_type,
                    came_from=analysis.came_from,
                    via_action=analysis.via_action,
                    selector=selector,
                ),
                previous_url=None,
            )
            summary += f"\nNow on page [{analysis.page_type}]"

        if pattern is not None and pattern.confirmed and pattern.count > CONFIRMATION_COUNT:
            summary += (
                f"\nPATTERN ALREADY CONFIRMED ({pattern.count}x): {pattern.action} {pattern.target_type}"
                f" -> {pattern.effect}. Click something DIFFERENT or call done()."
            )
        return summary

    async def _maybe_consolidate(self, rendered: str, *, force: bool = False) -> None:
        page = self.memory.current_page
        if page is None or self.memory.unconsolidated_count() == 0:
            return
        now = time.monotonic()
        due = force or should_consolidate(
            len(page.raw_observations),
            self._last_consolidation,
            len(page.patterns),
            now,
            every=self._settings.consolidate_every,
            interval_sec=self._settings.consolidate_interval_sec,
        )
        if not due:
            return
        await self._consolidate_page(page, rendered)
        self._last_consolidation = now

    async def _consolidate_page(self, page: PageNode, rendered: str | None) -> None:
        self._transition(OrchestratorState.CONSOLIDATING)
        result = await asyncio.to_thread(
            self._consolidator.consolidate,
            [obs.describe() for obs in page.raw_observations],
            page.patterns,
            latest=page.raw_observations[-1] if page.raw_observations else None,
            dom_excerpt=rendered,
        )
        self.memory.update_patterns_from_consolidation(result.patterns, page.id)
        self._log(
            logging.INFO,
            "Consolidated page %s: %d pattern(s), %d confirmed",
            page.id,
            len(page.patterns),
            self.memory.confirmed_pattern_count(page.id),
        )

    # ------------------------------------------------------------------
    # Endings
    # ------------------------------------------------------------------

    async def _finish(self, action: DoneAction) -> ExplorationResult:
        for page in list(self.memory.pages.values()):
            if self.memory.unconsolidated_count(page.id) > 0:
                await self._consolidate_page(page, None)

        key_elements = self.memory.get_discovered_selectors()

        for page_id, page in list(self.memory.pages.items()):
            if page.raw_observations:
                summary = await asyncio.to_thread(
                    self._summarizer.summarize,
                    page_id,
                    [obs.describe() for obs in page.raw_observations],
                    page.understanding,
                )
                self.memory.update_page_summary(page_id, summary)

        understanding = action.understanding.strip()
        if action.key_findings:
            understanding += "\n\nKey findings:\n" + "\n".join(f"- {f}" for f in action.key_findings)

        self._transition(OrchestratorState.DONE)
        self._log(
            logging.INFO,
            "Exploration finished after %d step(s): %d page(s), %d key element role(s)",
            len(self._steps),
            len(self.memory.pages),
            len(key_elements),
        )
        result = ExplorationResult(
            success=True,
            pages=self.memory.pages,
            navigation_path=self.memory.navigation_path,
            final_understanding=understanding,
            key_elements=key_elements,
            steps=list(self._steps),
            logs=list(self._logs),
        )
        self._emit(ExplorationEvent.FINISH, {"success": True, "steps": len(self._steps)})
        return result

    def _fail(self, error: str) -> ExplorationResult:
        self._transition(OrchestratorState.FAILED)
        self._log(logging.WARNING, "Exploration ended without done: %s", error)
        result = ExplorationResult(
            success=False,
            pages=self.memory.pages,
            navigation_path=self.memory.navigation_path,
            final_understanding=self.memory.get_final_understanding() if self.memory.pages else "",
            key_elements=self.memory.get_discovered_selectors(),
            steps=list(self._steps),
            logs=list(self._logs),
            error=error,
        )
        self._emit(ExplorationEvent.FINISH, {"success": False, "error": error, "steps": len(self._steps)})
        return result


async def explore(
    driver: PageDriver,
    llm: LLMProvider,
    task: str,
    *,
    stop_event: asyncio.Event | None = None,
    on_event: EventCallback | None = None,
) -> ExplorationResult:
    """Run one exploration session with default agents and settings."""
    orchestrator = ExplorationOrchestrator(driver, llm, on_event=on_event)
    return await orchestrator.explore(task, stop_event=stop_event)
