"""Unit tests for page bindings: validation, freshness, merge and serialisation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sitewright.recipe.bindings import (
    ClickBehavior,
    PageBindings,
    ScrollBehavior,
    StateCondition,
    binding_age_hours,
    example_bindings,
    is_fresh,
    merge_bindings,
    validate_bindings,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _bindings(**overrides) -> PageBindings:
    data = {
        "id": "jobs_example_com",
        "urlPattern": "jobs.example.com",
        "LIST": ".list",
        "LIST_ITEM": ".item",
        "ITEM_ID": {"from": "href", "pattern": r"/(\d+)"},
        "updatedAt": NOW.isoformat(),
    }
    data.update(overrides)
    return PageBindings.model_validate(data)


class TestSerialisation:
    """Test the uppercase-key JSON form."""

    def test_round_trip(self):
        original = example_bindings("linkedin_jobs")
        restored = PageBindings.model_validate(original.to_json_dict())
        assert restored == original

    def test_uppercase_keys(self):
        data = _bindings(DETAILS_CONTENT=[".desc"]).to_json_dict()
        assert data["LIST"] == ".list"
        assert data["LIST_ITEM"] == ".item"
        assert data["ITEM_ID"] == {"from": "href", "pattern": r"/(\d+)"}
        assert data["urlPattern"] == "jobs.example.com"
        assert "SEARCH_BOX" not in data

    def test_nested_conditions(self):
        b = _bindings(NO_MORE_ITEMS={"or": [{"exists": ".end"}, {"countAtLeast": {"selector": ".item", "count": 3}}]})
        assert b.no_more_items.any_of[1].count_at_least.count == 3
        assert b.no_more_items.selectors() == [".end", ".item"]

    def test_get_key(self):
        b = _bindings(ELEMENTS={"sortDropdown": ".sort"})
        assert b.get_key("LIST_ITEM") == ".item"
        assert b.get_key("ELEMENTS.sortDropdown") == ".sort"
        assert b.get_key("ELEMENTS.missing") is None

    def test_condition_describe(self):
        assert StateCondition(exists=".item").describe() == '{"exists": ".item"}'


class TestValidation:
    """Test structural validation."""

    def test_minimal_valid(self):
        report = validate_bindings(_bindings())
        assert report.valid
        assert any("DETAILS_CONTENT" in w for w in report.warnings)

    def test_missing_required(self):
        report = validate_bindings(PageBindings())
        assert not report.valid
        assert "LIST selector is required" in report.errors
        assert "LIST_ITEM selector is required" in report.errors
        assert "ITEM_ID extractor is required" in report.errors

    def test_attribute_extractor_needs_attribute(self):
        report = validate_bindings(_bindings(ITEM_ID={"from": "attribute"}))
        assert not report.valid

    def test_bad_pattern(self):
        report = validate_bindings(_bindings(ITEM_ID={"from": "href", "pattern": "(unclosed"}))
        assert any("not a valid regex" in e for e in report.errors)

    def test_scroll_behaviour_requirements(self):
        assert not validate_bindings(_bindings(SCROLL_BEHAVIOR="paginated")).valid
        assert not validate_bindings(_bindings(SCROLL_BEHAVIOR="load_more_button")).valid
        ok = _bindings(SCROLL_BEHAVIOR="paginated", NEXT_PAGE_BUTTON=".next")
        assert ok.scroll_behavior == ScrollBehavior.PAGINATED
        assert validate_bindings(ok).valid

    def test_navigates_without_return_warns(self):
        report = validate_bindings(_bindings(CLICK_BEHAVIOR="navigates"))
        assert report.valid
        assert any("RETURN_TO_LIST" in w for w in report.warnings)

    def test_examples_are_valid(self):
        for name in ("linkedin_jobs", "indeed_jobs"):
            assert validate_bindings(example_bindings(name)).valid


class TestFreshness:
    """Test the 24h freshness window."""

    def test_23_hours_is_fresh(self):
        assert is_fresh(_bindings(), now=NOW + timedelta(hours=23))

    def test_25_hours_is_stale(self):
        assert not is_fresh(_bindings(), now=NOW + timedelta(hours=25))

    def test_invalid_is_never_fresh(self):
        assert not is_fresh(_bindings(LIST=""), now=NOW)

    def test_unstamped_age_is_infinite(self):
        b = _bindings()
        b.updated_at = None
        assert binding_age_hours(b) == float("inf")
        assert not is_fresh(b)

    def test_naive_timestamp_treated_as_utc(self):
        b = _bindings(updatedAt="2024-06-01T12:00:00")
        assert binding_age_hours(b, now=NOW + timedelta(hours=2)) == 2.0

    def test_custom_window(self):
        assert not is_fresh(_bindings(), now=NOW + timedelta(hours=2), freshness_hours=1)


class TestMerge:
    """Test applying fixes to bindings."""

    def test_replaces_key_and_bumps_version(self):
        merged = merge_bindings(_bindings(), {"LIST_ITEM": ".card"})
        assert merged.list_item == ".card"
        assert merged.list_container == ".list"
        assert merged.version == 2
        assert merged.updated_at > NOW

    def test_dotted_element_key(self):
        merged = merge_bindings(_bindings(ELEMENTS={"a": ".a"}), {"ELEMENTS.b": ".b"})
        assert merged.elements == {"a": ".a", "b": ".b"}

    def test_element_map_merges(self):
        merged = merge_bindings(_bindings(ELEMENTS={"a": ".a"}), {"ELEMENTS": {"b": ".b"}})
        assert merged.elements == {"a": ".a", "b": ".b"}

    def test_condition_fix(self):
        merged = merge_bindings(_bindings(), {"LIST_LOADED": {"exists": ".card"}})
        assert merged.list_loaded.exists == ".card"

    def test_behaviour_fix(self):
        merged = merge_bindings(_bindings(), {"CLICK_BEHAVIOR": "shows_panel"})
        assert merged.click_behavior == ClickBehavior.SHOWS_PANEL
