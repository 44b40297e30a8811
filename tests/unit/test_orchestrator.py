"""Unit tests for the exploration orchestrator.

The decision agent, change analyzer, consolidator and summarizer are
mocked so each test scripts the session step by step against a
``FakePageDriver``.
"""

from __future__ import annotations

import asyncio
import threading
import time
from unittest.mock import MagicMock

import pytest

from fakes import FakePageDriver, el, listing_page
from sitewright.explorer.actions import ClickAction, DoneAction, ObserveAction, ScrollAction
from sitewright.explorer.change_analyzer import ChangeAnalysis, ChangeAnalyzer, ChangeType
from sitewright.explorer.consolidator import ConsolidationResult, PatternConsolidator
from sitewright.explorer.decision import DecisionAgent
from sitewright.explorer.orchestrator import ExplorationOrchestrator, OrchestratorState, page_id_for_url
from sitewright.explorer.summarizer import PageSummarizer
from sitewright.llm.base import LLMProvider
from sitewright.settings.config import ExplorationSettings

SEARCH = "https://jobs.example.com/search"
DETAILS = "https://jobs.example.com/jobs/100"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _panel_update(**overrides) -> ChangeAnalysis:
    data = {
        "description": "Details panel updated",
        "element_type": "job listing",
        "change_type": ChangeType.CONTENT_LOADED,
        "page_type": "jobs_example_com",
    }
    data.update(overrides)
    return ChangeAnalysis(**data)


def _build(driver: FakePageDriver, actions: list, analyses: list | None = None, **settings) -> tuple:
    decision = MagicMock(spec=DecisionAgent)
    decision.decide.side_effect = actions
    analyzer = MagicMock(spec=ChangeAnalyzer)
    analyzer.analyze.side_effect = analyses or [_panel_update()] * len(actions)
    consolidator = MagicMock(spec=PatternConsolidator)
    consolidator.consolidate.side_effect = lambda observations, existing, **kw: ConsolidationResult(
        patterns=[p.model_copy() for p in existing]
    )
    summarizer = MagicMock(spec=PageSummarizer)
    summarizer.summarize.side_effect = lambda page_id, observations, understanding: f"{page_id} summarized"
    events: list[tuple[str, dict]] = []

    orchestrator = ExplorationOrchestrator(
        driver,
        MagicMock(spec=LLMProvider),
        settings=ExplorationSettings(**settings),
        decision=decision,
        analyzer=analyzer,
        consolidator=consolidator,
        summarizer=summarizer,
        settle_delay_sec=0,
        on_event=lambda kind, payload: events.append((kind, payload)),
    )
    mocks = {"decision": decision, "analyzer": analyzer, "consolidator": consolidator, "summarizer": summarizer}
    return orchestrator, mocks, events


def _details_page() -> object:
    return el("body", "", el("h1", "Job 100 Engineer"), el("button", "Apply", cls="apply"))


def _open_details(driver: FakePageDriver, element) -> None:
    driver.history.append((driver._url, driver.root))
    driver._url = DETAILS
    driver.root = driver.pages[DETAILS]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestPageId:
    def test_host_based(self):
        assert page_id_for_url(SEARCH) == "jobs_example_com"

    def test_no_host(self):
        assert page_id_for_url("about:blank") == "start_page"


class TestHappyPath:
    """Test a session that the model ends with done."""

    @pytest.mark.anyio
    async def test_clicks_then_done(self, listing_driver):
        orchestrator, mocks, events = _build(
            listing_driver,
            [
                ClickAction(selector="a.item", reason="open a listing"),
                ClickAction(selector="a.item", reason="confirm"),
                DoneAction(understanding="Listing with a side panel", key_findings=["cards update the panel"]),
            ],
        )

        result = await orchestrator.explore("learn how listings open")

        assert result.success
        assert result.error is None
        assert len(result.steps) == 3
        assert listing_driver.clicks == [("a.item", 0), ("a.item", 0)]
        assert result.navigation_path == ["jobs_example_com"]
        assert result.final_understanding == "Listing with a side panel\n\nKey findings:\n- cards update the panel"
        assert result.key_elements == {"job_listings": ["a.item"]}
        assert orchestrator.state == OrchestratorState.DONE

        page = result.pages["jobs_example_com"]
        assert page.understanding == "jobs_example_com summarized"
        assert page.raw_observations == []
        assert page.patterns[0].count == 2
        assert page.patterns[0].confirmed
        mocks["consolidator"].consolidate.assert_called_once()
        assert mocks["analyzer"].analyze.call_count == 2

        kinds = [kind for kind, _ in events]
        assert kinds.count("step") == 3
        assert kinds[-1] == "finish"
        assert "state_changed" in kinds
        assert "analysis" in kinds

    @pytest.mark.anyio
    async def test_step_results_recorded(self, listing_driver):
        orchestrator, mocks, _ = _build(
            listing_driver,
            [ClickAction(selector="a.item", reason="open"), DoneAction(understanding="done")],
        )
        result = await orchestrator.explore("task")

        first = result.steps[0]
        assert first.action["type"] == "click"
        assert first.reason == "open"
        assert "Result: Details panel updated [content_loaded]" in first.result
        assert result.steps[1].result == "done"
        assert result.final_understanding == "done"

        # The second decision sees the first step's result.
        last_result = mocks["decision"].decide.call_args_list[1].args[3]
        assert last_result.startswith('Clicked "a.item"')


class TestStepHandling:
    """Test selector validation and which steps get analysed."""

    @pytest.mark.anyio
    async def test_unknown_selector_becomes_observe(self, listing_driver):
        orchestrator, mocks, _ = _build(
            listing_driver,
            [ClickAction(selector="#made-up"), DoneAction(understanding="ok")],
        )
        result = await orchestrator.explore("task")

        assert result.steps[0].action["type"] == "observe"
        assert result.steps[0].breakers == ['selector "#made-up" is not on the page']
        assert listing_driver.clicks == []
        mocks["analyzer"].analyze.assert_not_called()

    @pytest.mark.anyio
    async def test_failed_action_not_analysed(self, listing_driver):
        async def refuse(selector, index=0):
            return False

        listing_driver.click = refuse
        orchestrator, mocks, _ = _build(
            listing_driver,
            [ClickAction(selector="a.item"), DoneAction(understanding="ok")],
        )
        result = await orchestrator.explore("task")

        assert result.steps[0].result.endswith("-> FAILED")
        mocks["analyzer"].analyze.assert_not_called()

    @pytest.mark.anyio
    async def test_insignificant_change_not_recorded(self, listing_driver):
        orchestrator, _, _ = _build(
            listing_driver,
            [ScrollAction(), DoneAction(understanding="ok")],
            [_panel_update(change_type=ChangeType.NO_CHANGE, description="Nothing happened")],
        )
        result = await orchestrator.explore("task")

        assert result.pages["jobs_example_com"].patterns == []
        assert listing_driver.scrolls == [("down", None)]

    @pytest.mark.anyio
    async def test_navigation_adds_page_and_edge(self):
        driver = FakePageDriver(listing_page(3), pages={DETAILS: _details_page()})
        driver.on_click["a.item"] = _open_details
        orchestrator, mocks, _ = _build(
            driver,
            [ClickAction(selector="a.item"), DoneAction(understanding="ok")],
            [
                _panel_update(
                    description="Opened the job posting",
                    change_type=ChangeType.NAVIGATION,
                    url_changed=True,
                    is_new_page_type=True,
                    page_type="job_details",
                    page_understanding="A single job posting",
                    came_from="jobs_example_com",
                    via_action='click "a.item"',
                )
            ],
        )
        result = await orchestrator.explore("task")

        assert result.navigation_path == ["jobs_example_com", "job_details"]
        assert "Now on page [job_details]" in result.steps[0].result
        source = result.pages["jobs_example_com"]
        assert source.outgoing_edges[0].to_page == "job_details"
        assert source.outgoing_edges[0].selector == "a.item"
        assert orchestrator.memory.current_page_id == "job_details"

        args = mocks["analyzer"].analyze.call_args.args
        assert args[1] == SEARCH
        assert args[2] == DETAILS

    @pytest.mark.anyio
    async def test_appeared_elements_passed_to_analyzer(self, listing_driver):
        def open_panel(driver, element):
            driver.root.children.append(el("div", "", el("button", "Apply now", cls="apply"), cls="panel"))

        listing_driver.on_click["a.item"] = open_panel
        orchestrator, mocks, _ = _build(
            listing_driver,
            [ClickAction(selector="a.item"), ClickAction(selector="a.item"), DoneAction(understanding="ok")],
        )
        await orchestrator.explore("task")

        first, second = mocks["analyzer"].analyze.call_args_list
        assert first.kwargs["appeared"].startswith("*[")
        assert "Apply now" in first.kwargs["appeared"]
        assert "Job 101" not in first.kwargs["appeared"]
        # The second panel is new again; the first one is not
        assert second.kwargs["appeared"].count("Apply now") == 1


class TestEndings:
    """Test every way a session can end without done from the model."""

    @pytest.mark.anyio
    async def test_max_steps(self, listing_driver):
        orchestrator, _, events = _build(
            listing_driver,
            [ScrollAction(), ScrollAction()],
            [_panel_update(change_type=ChangeType.NO_CHANGE)] * 2,
            max_steps=2,
        )
        result = await orchestrator.explore("task")

        assert not result.success
        assert result.error == "Max exploration steps (2) reached"
        assert len(result.steps) == 2
        assert result.final_understanding.startswith("SITE UNDERSTANDING:")
        assert orchestrator.state == OrchestratorState.FAILED
        assert events[-1] == ("finish", {"success": False, "error": result.error, "steps": 2})

    @pytest.mark.anyio
    async def test_stop_event(self, listing_driver):
        orchestrator, mocks, _ = _build(listing_driver, [ScrollAction()])
        stop = asyncio.Event()
        stop.set()

        result = await orchestrator.explore("task", stop_event=stop)

        assert not result.success
        assert result.error == "Exploration stopped"
        assert result.steps == []
        assert "jobs_example_com" in result.pages
        mocks["decision"].decide.assert_not_called()

    @pytest.mark.anyio
    async def test_disconnect(self, listing_driver):
        listing_driver.connected = False
        orchestrator, _, _ = _build(listing_driver, [ScrollAction()])

        result = await orchestrator.explore("task")

        assert not result.success
        assert result.error == "Browser connection lost"

    @pytest.mark.anyio
    async def test_unexpected_error(self, listing_driver):
        orchestrator, _, _ = _build(listing_driver, [RuntimeError("model exploded")])

        result = await orchestrator.explore("task")

        assert not result.success
        assert result.error == "exception: model exploded"
        assert any("Starting exploration" in line for line in result.logs)

    @pytest.mark.anyio
    async def test_observe_loop_ends_with_done(self, listing_driver):
        orchestrator, _, _ = _build(listing_driver, [ObserveAction()] * 6, consecutive_observe_limit=3)

        result = await orchestrator.explore("task")

        assert result.success
        assert len(result.steps) == 4
        assert result.steps[-1].action["type"] == "done"
        assert "no further progress" in result.final_understanding


    @pytest.mark.anyio
    async def test_repeated_click_ends_via_observe_loop(self, listing_driver):
        orchestrator, mocks, _ = _build(listing_driver, [ClickAction(selector="a.item")] * 40, max_steps=30)

        result = await orchestrator.explore("task")

        assert result.success
        assert listing_driver.clicks == [("a.item", 0)] * 5
        assert len(result.steps) == 11
        assert [step.action["type"] for step in result.steps] == ["click"] * 5 + ["observe"] * 5 + ["done"]
        assert result.steps[5].breakers == ['"a.item" already clicked 5 times']
        assert result.steps[-1].breakers == ['"a.item" already clicked 5 times', "5 consecutive observes"]
        assert mocks["decision"].decide.call_count == 11
        assert mocks["analyzer"].analyze.call_count == 5

        # Later decisions are told a loop was detected.
        warnings = mocks["decision"].decide.call_args_list[6].args[4]
        assert any("Loop detected" in w for w in warnings)

class TestEvents:
    @pytest.mark.anyio
    async def test_callback_errors_ignored(self, listing_driver):
        orchestrator, _, _ = _build(listing_driver, [DoneAction(understanding="ok")])

        def broken(kind, payload):
            raise ValueError("listener bug")

        orchestrator._on_event = broken
        result = await orchestrator.explore("task")
        assert result.success


class TestConcurrency:
    """Test that model calls do not block the event loop."""

    @pytest.mark.anyio
    async def test_model_calls_run_off_loop_thread(self, listing_driver):
        orchestrator, mocks, _ = _build(
            listing_driver,
            [ClickAction(selector="a.item"), DoneAction(understanding="ok")],
        )
        loop_thread = threading.get_ident()
        seen: list[int] = []

        def decide(*args):
            seen.append(threading.get_ident())
            return [ClickAction(selector="a.item"), DoneAction(understanding="ok")][len(seen) - 1]

        mocks["decision"].decide.side_effect = decide
        mocks["analyzer"].analyze.side_effect = lambda *args, **kwargs: seen.append(threading.get_ident()) or _panel_update()

        result = await orchestrator.explore("task")

        assert result.success
        assert len(seen) == 3
        assert loop_thread not in seen

    @pytest.mark.anyio
    async def test_loop_stays_responsive_during_decision(self, listing_driver):
        orchestrator, mocks, _ = _build(listing_driver, [])
        ticks: list[int] = []
        ticks_during_decision: list[int] = []

        def slow_decide(*args):
            time.sleep(0.2)
            ticks_during_decision.append(len(ticks))
            return DoneAction(understanding="ok")

        mocks["decision"].decide.side_effect = slow_decide

        async def ticker():
            for n in range(5):
                ticks.append(n)
                await asyncio.sleep(0.01)

        result, _ = await asyncio.gather(orchestrator.explore("task"), ticker())

        assert result.success
        assert ticks_during_decision[0] >= 3
