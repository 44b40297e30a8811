"""Unit tests for binding discovery and repair."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from sitewright.llm.base import LLMProvider, LLMResult, ToolCall
from sitewright.recipe import commands as c
from sitewright.recipe.bindings import ClickBehavior
from sitewright.recipe.executor import BindingFixRequest
from sitewright.recipe.navigator import BindingFixAnswer, Navigator, normalize_bindings

DOM_CONTEXT = '[0]<a class="item" href="/jobs/101">Job 101\n[1]<a class="item" href="/jobs/102">Job 102'


def _navigator(*results: LLMResult) -> tuple[Navigator, MagicMock]:
    llm = MagicMock(spec=LLMProvider)
    llm.chat.side_effect = list(results)
    return Navigator(llm), llm


def _fix_request(**overrides) -> BindingFixRequest:
    data = {
        "command": c.WaitFor(target="list"),
        "binding": "LIST_LOADED",
        "current_value": {"exists": ".wrong"},
        "error": "Timeout waiting for condition: {\"exists\": \".wrong\"}",
        "dom_context": DOM_CONTEXT,
    }
    data.update(overrides)
    return BindingFixRequest(**data)


class TestNormalizeBindings:
    """Test defaults filled on raw discovery answers."""

    def test_identity_and_defaults(self):
        bindings = normalize_bindings({"LIST": ".list", "LIST_ITEM": ".item"}, "https://Jobs.Example.com/search")
        assert bindings.id == "jobs_example_com"
        assert bindings.url_pattern == "jobs.example.com"
        assert bindings.click_behavior == ClickBehavior.INLINE
        assert bindings.page_loaded.exists == "body"
        assert bindings.list_loaded.exists == ".item"
        assert bindings.list_updated.count_changed == ".item"
        assert bindings.no_more_items.exists == ".no-results"
        assert bindings.item_id.source == "href"
        assert bindings.item_id.pattern == r"/(\d+)"

    def test_details_panel_implies_shows_panel(self):
        bindings = normalize_bindings(
            {"LIST": ".list", "LIST_ITEM": ".item", "DETAILS_PANEL": ".details"}, "https://jobs.example.com"
        )
        assert bindings.click_behavior == ClickBehavior.SHOWS_PANEL

    def test_string_conditions_become_exists(self):
        bindings = normalize_bindings(
            {"LIST": ".list", "LIST_ITEM": ".item", "LIST_LOADED": ".item:first-child", "LOADING": ""},
            "https://jobs.example.com",
        )
        assert bindings.list_loaded.exists == ".item:first-child"
        assert bindings.loading is None

    def test_item_id_source_defaulted(self):
        bindings = normalize_bindings(
            {"LIST": ".list", "LIST_ITEM": ".item", "ITEM_ID": {"attribute": "data-jk", "from": None}},
            "https://jobs.example.com",
        )
        assert bindings.item_id.source == "href"
        assert bindings.item_id.attribute == "data-jk"


class TestDiscovery:
    """Test full binding discovery."""

    def test_tool_call_answer(self):
        navigator, llm = _navigator(
            LLMResult(
                tool_calls=[
                    ToolCall(
                        "report_bindings",
                        {
                            "LIST": ".list",
                            "LIST_ITEM": ".item",
                            "DETAILS_CONTENT": [".desc"],
                            "SCROLL_BEHAVIOR": "infinite",
                            "ELEMENTS": {"sortDropdown": "select.sort"},
                        },
                    )
                ],
                input_tokens=100,
                output_tokens=50,
            )
        )
        result = navigator.discover_bindings(DOM_CONTEXT, "https://jobs.example.com/search", hints="Cards open a panel")

        assert result.success, result.error
        assert result.bindings.list_item == ".item"
        assert result.bindings.details_content == [".desc"]
        assert result.bindings.elements == {"sortDropdown": "select.sort"}
        assert result.usage.api_calls == 1
        prompt = llm.chat.call_args.args[0][1]["content"]
        assert "EXPLORATION NOTES:\nCards open a panel" in prompt
        assert DOM_CONTEXT in prompt

    def test_text_answer_accepted(self):
        navigator, _ = _navigator(LLMResult(content='```json\n{"LIST": "ul.results", "LIST_ITEM": "li.result"}\n```'))
        result = navigator.discover_bindings(DOM_CONTEXT, "https://jobs.example.com")
        assert result.success
        assert result.bindings.list_container == "ul.results"

    def test_missing_list_item_fails(self):
        navigator, _ = _navigator(LLMResult(tool_calls=[ToolCall("report_bindings", {"LIST": ".list"})]))
        result = navigator.discover_bindings(DOM_CONTEXT, "https://jobs.example.com")
        assert not result.success
        assert "LIST or LIST_ITEM" in result.error

    def test_model_failure(self):
        navigator, _ = _navigator(LLMResult(content="I am not sure"))
        result = navigator.discover_bindings(DOM_CONTEXT, "https://jobs.example.com")
        assert not result.success
        assert result.error.startswith("Model call failed")

    def test_malformed_behaviour_rejected(self):
        navigator, _ = _navigator(
            LLMResult(
                tool_calls=[
                    ToolCall("report_bindings", {"LIST": ".list", "LIST_ITEM": ".item", "SCROLL_BEHAVIOR": "sideways"})
                ]
            )
        )
        result = navigator.discover_bindings(DOM_CONTEXT, "https://jobs.example.com")
        assert not result.success
        assert "malformed" in result.error

    def test_dom_context_capped(self):
        llm = MagicMock(spec=LLMProvider)
        llm.chat.return_value = LLMResult(tool_calls=[ToolCall("report_bindings", {"LIST": ".l", "LIST_ITEM": ".i"})])
        navigator = Navigator(llm, dom_context_max_chars=10)
        navigator.discover_bindings("x" * 50, "https://jobs.example.com")
        prompt = llm.chat.call_args.args[0][1]["content"]
        assert "x" * 10 in prompt
        assert "x" * 11 not in prompt


class TestFixBinding:
    """Test single-binding repair."""

    def test_enveloped_answer(self):
        navigator, llm = _navigator(
            LLMResult(tool_calls=[ToolCall("report_fix", {"fixes": {"LIST_LOADED": {"exists": ".item"}}})])
        )
        result = navigator.fix_binding(_fix_request())
        assert result.success
        assert result.fixes == {"LIST_LOADED": {"exists": ".item"}}
        prompt = llm.chat.call_args.args[0][1]["content"]
        assert '"type": "WAIT_FOR"' in prompt
        assert "BINDING: LIST_LOADED" in prompt

    def test_bare_mapping_answer(self):
        navigator, _ = _navigator(LLMResult(content='{"LIST_ITEM": ".item"}'))
        result = navigator.fix_binding(_fix_request(binding="LIST_ITEM"))
        assert result.fixes == {"LIST_ITEM": ".item"}

    def test_empty_values_dropped(self):
        navigator, _ = _navigator(LLMResult(tool_calls=[ToolCall("report_fix", {"fixes": {"LIST_ITEM": ""}})]))
        result = navigator.fix_binding(_fix_request())
        assert not result.success
        assert result.error == "Model proposed no fix"

    def test_model_failure(self):
        navigator, _ = _navigator(LLMResult())
        result = navigator.fix_binding(_fix_request())
        assert not result.success
        assert "no answer" in result.error

    def test_fix_context_capped(self):
        llm = MagicMock(spec=LLMProvider)
        llm.chat.return_value = LLMResult(content='{"LIST_ITEM": ".item"}')
        Navigator(llm, fix_context_max_chars=5).fix_binding(_fix_request(dom_context="y" * 40))
        prompt = llm.chat.call_args.args[0][1]["content"]
        assert "y" * 5 in prompt
        assert "y" * 6 not in prompt


class TestBindingFixAnswer:
    @pytest.mark.parametrize(
        "data",
        [{"fixes": {"LIST": ".l"}}, {"LIST": ".l"}],
    )
    def test_accepts_both_shapes(self, data):
        assert BindingFixAnswer.model_validate(data).fixes == {"LIST": ".l"}
