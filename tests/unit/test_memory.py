"""Unit tests for the exploration memory graph."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from sitewright.explorer.memory import (
    BehaviorPattern,
    Classification,
    ExplorationMemory,
    RawObservation,
    effects_similar,
    normalize_effect,
)


def _observation(selector: str = ".item", effect: str = "Details panel updated", **overrides) -> dict:
    data = {
        "action": "click",
        "selector": selector,
        "effect": effect,
        "target_type": "job listing",
        "change_type": "content_loaded",
    }
    data.update(overrides)
    return data


@pytest.fixture()
def memory():
    mem = ExplorationMemory()
    mem.initialize_page("job_search", "Search results with a details pane", "https://jobs.example.com/search")
    return mem


class TestEffects:
    """Test effect normalisation and similarity."""

    def test_normalize_strips_quotes_and_qualifiers(self):
        assert normalize_effect('Showed "Senior Engineer" details') == "showed details"
        assert normalize_effect("Loaded   results for python") == "loaded results"
        assert normalize_effect("Panel expanded to show salary") == "panel expanded"

    @pytest.mark.parametrize(
        ("a", "b"),
        [
            ("Details panel updated", "details panel updated"),
            ("Details panel updated", 'Details panel updated for "Data Engineer"'),
            ("The job details appeared on the right", "Job details shown"),
            ("Modal opened with filters", "A modal opened"),
        ],
    )
    def test_similar(self, a, b):
        assert effects_similar(a, b)

    @pytest.mark.parametrize(
        ("a", "b"),
        [
            ("Modal opened", "Navigated to a new page"),
            ("Filter applied", "Modal closed"),
        ],
    )
    def test_not_similar(self, a, b):
        assert not effects_similar(a, b)


class TestObservations:
    """Test observation recording and local pattern matching."""

    def test_second_matching_observation_confirms(self, memory):
        first = memory.add_raw_observation(_observation(".item"))
        assert first.count == 1
        assert not first.confirmed

        second = memory.add_raw_observation(_observation(".item:nth-of-type(2)", 'Details panel updated for "Job 2"'))
        assert second is first
        assert second.count == 2
        assert second.confirmed
        assert second.selectors == [".item", ".item:nth-of-type(2)"]
        assert len(memory.current_page.raw_observations) == 2

    def test_different_change_type_is_new_pattern(self, memory):
        memory.add_raw_observation(_observation())
        memory.add_raw_observation(_observation(change_type="modal_opened"))
        assert len(memory.current_page.patterns) == 2

    def test_selectors_capped(self, memory):
        for n in range(5):
            pattern = memory.add_raw_observation(_observation(f".item-{n}"))
        assert pattern.count == 5
        assert len(pattern.selectors) == 3

    def test_target_type_filled_later(self, memory):
        memory.add_raw_observation(_observation(target_type=""))
        pattern = memory.add_raw_observation(_observation())
        assert pattern.target_type == "job listing"

    def test_model_instance_accepted(self, memory):
        obs = RawObservation(action="scroll", effect="More results loaded", change_type="content_loaded")
        assert memory.add_raw_observation(obs).action == "scroll"
        assert obs.describe() == "scroll -> More results loaded [content_loaded]"

    def test_no_current_page(self):
        assert ExplorationMemory().add_raw_observation(_observation()) is None

    def test_explicit_page(self, memory):
        memory.update_from_classification(
            Classification(page_type="job_details", came_from="job_search", via_action='click ".item"')
        )
        memory.add_raw_observation(_observation(), page_id="job_search")
        assert len(memory.pages["job_search"].raw_observations) == 1
        assert memory.pages["job_details"].raw_observations == []


class TestGraph:
    """Test page nodes and edges."""

    def test_initialize_twice_bumps_visits(self, memory):
        page = memory.initialize_page("job_search", "ignored", "https://jobs.example.com/search?page=2")
        assert page.visit_count == 2
        assert page.understanding == "Search results with a details pane"
        assert page.last_url.endswith("page=2")

    def test_navigation_creates_node_and_edge(self, memory):
        page = memory.update_from_classification(
            Classification(
                page_type="job_details",
                understanding="Full job posting",
                url="https://jobs.example.com/jobs/101",
                is_new_page_type=True,
                came_from="job_search",
                via_action='click ".item"',
                selector=".item",
            ),
            previous_url="https://jobs.example.com/search",
        )
        assert memory.current_page_id == "job_details"
        assert page.understanding == "Full job posting"
        source = memory.pages["job_search"]
        assert source.outgoing_edges[0].to_page == "job_details"
        assert source.outgoing_edges[0].selector == ".item"
        assert page.incoming_edges[0].from_page == "job_search"
        assert memory.navigation_path == ["job_search", "job_details"]

    def test_duplicate_edge_not_repeated(self, memory):
        nav = Classification(page_type="job_details", came_from="job_search", via_action='click ".item"')
        back = Classification(page_type="job_search", came_from="job_details", via_action="go back")
        memory.update_from_classification(nav)
        memory.update_from_classification(back)
        memory.update_from_classification(nav)
        assert len(memory.pages["job_search"].outgoing_edges) == 1
        assert memory.pages["job_details"].visit_count == 2
        assert memory.navigation_path == ["job_search", "job_details"]

    def test_revisit_records_understanding(self, memory):
        memory.update_from_classification(Classification(page_type="job_details", came_from="job_search"))
        memory.update_from_classification(
            Classification(page_type="job_search", understanding="Same list, now filtered", came_from="job_details")
        )
        revisit = memory.pages["job_search"].raw_observations[-1]
        assert revisit.action == "revisit"
        assert revisit.effect == "Same list, now filtered"

    def test_unknown_source_no_edge(self, memory):
        page = memory.update_from_classification(Classification(page_type="job_details", came_from="elsewhere"))
        assert page.incoming_edges == []

    def test_self_edge_ignored(self, memory):
        memory.update_from_classification(Classification(page_type="job_search", came_from="job_search"))
        assert memory.pages["job_search"].outgoing_edges == []


class TestConsolidationUpdates:
    """Test applying consolidated patterns and summaries."""

    def test_first_seen_preserved_and_confirmation_recomputed(self, memory):
        original = memory.add_raw_observation(_observation())
        seen = original.first_seen
        replacement = BehaviorPattern(
            id=original.id,
            action="click",
            target_type="listing",
            effect="updates the details panel",
            selectors=[".a", ".b", ".c", ".d"],
            count=2,
            confirmed=False,
            first_seen=datetime(2030, 1, 1, tzinfo=timezone.utc),
        )
        fresh = BehaviorPattern(action="click", target_type="close button", effect="closes the panel", count=1, confirmed=True)
        memory.update_patterns_from_consolidation([replacement, fresh])

        patterns = memory.current_page.patterns
        assert patterns[0].first_seen == seen
        assert patterns[0].confirmed
        assert patterns[0].selectors == [".a", ".b", ".c"]
        assert not patterns[1].confirmed
        assert replacement.selectors == [".a", ".b", ".c", ".d"]

    def test_unconsolidated_count(self, memory):
        memory.add_raw_observation(_observation())
        memory.add_raw_observation(_observation())
        assert memory.unconsolidated_count() == 2
        memory.update_patterns_from_consolidation(memory.current_page.patterns)
        assert memory.unconsolidated_count() == 0
        memory.add_raw_observation(_observation())
        assert memory.unconsolidated_count() == 1
        assert memory.unconsolidated_count("nowhere") == 0

    def test_page_summary_clears_observations(self, memory):
        memory.add_raw_observation(_observation())
        memory.update_page_summary("job_search", "Listing with a side panel")
        page = memory.pages["job_search"]
        assert page.understanding == "Listing with a side panel"
        assert page.raw_observations == []
        assert page.patterns
        assert memory.unconsolidated_count() == 0


class TestQueries:
    """Test pattern and selector queries."""

    def test_matching_pattern_requires_confirmation(self, memory):
        memory.add_raw_observation(_observation())
        assert memory.get_matching_pattern("click") is None
        memory.add_raw_observation(_observation())
        assert memory.get_matching_pattern("click") is not None
        assert memory.get_matching_pattern("click", "listing") is not None
        assert memory.get_matching_pattern("click", "filter") is None
        assert memory.get_matching_pattern("scroll") is None
        assert memory.confirmed_pattern_count() == 1

    def test_discovered_selectors_by_role(self, memory):
        for _ in range(2):
            memory.add_raw_observation(_observation(".card"))
            memory.add_raw_observation(
                _observation("button.close", "Panel closed", target_type="close button", change_type="modal_closed")
            )
        memory.add_raw_observation(
            _observation("#q", "Suggestions shown", target_type="search input", change_type="content_loaded")
        )
        assert memory.get_discovered_selectors() == {"job_listings": [".card"], "close_button": ["button.close"]}

    def test_summary(self, memory):
        memory.add_raw_observation(_observation())
        memory.add_raw_observation(_observation(".item:nth-of-type(2)"))
        memory.update_from_classification(
            Classification(page_type="job_details", understanding="Job page", came_from="job_search", via_action="open")
        )
        summary = memory.get_summary()
        assert "[job_search]: Search results with a details pane" in summary
        assert "[CONFIRMED] click job listing (e.g., .item, .item:nth-of-type(2)) -> Details panel updated (2x)" in summary
        assert "ALREADY EXPLORED: job listing" in summary
        assert '-> leads to [job_details] via "open"' in summary
        assert "CURRENT PAGE: [job_details]" in summary
        assert "PATH: job_search -> job_details" in summary

    def test_empty_summary(self):
        assert ExplorationMemory().get_summary() == "No pages explored yet."

    def test_final_understanding(self, memory):
        memory.update_from_classification(
            Classification(page_type="job_details", understanding="Job page", came_from="job_search", via_action="open")
        )
        text = memory.get_final_understanding()
        assert text.startswith("SITE UNDERSTANDING:")
        assert "## job_search" in text
        assert '  - "open" -> job_details' in text
