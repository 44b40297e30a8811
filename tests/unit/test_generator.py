"""Unit tests for search, sort and filter recipe fragments."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest

from sitewright.llm.base import LLMProvider, LLMResult, ToolCall
from sitewright.recipe import commands as c
from sitewright.recipe.bindings import PageBindings, merge_bindings
from sitewright.recipe.generator import (
    ControlAnswer,
    FragmentGenerator,
    FragmentRequest,
    apply_fragments,
    build_fragment,
    merge_fragment_fixes,
)

DOM_CONTEXT = (
    '[0]<input id="q" placeholder="Search jobs"> @ body > form > input#q\n'
    '[1]<select id="sort"> @ body > select#sort\n'
    '[2]<a class="item" href="/jobs/101">Job 101 @ body > div > a.item'
)

RECIPE = c.Recipe(
    id="collect",
    name="Collect",
    description="Collect listings",
    commands=[
        c.OpenPage(url="https://jobs.example.com/search"),
        c.WaitFor(target="list"),
        c.ForEachItemInList(body=[c.ExtractDetails(), c.Save(), c.MarkDone()]),
        c.End(),
    ],
)


def _generator(*results) -> tuple[FragmentGenerator, MagicMock]:
    llm = MagicMock(spec=LLMProvider)
    llm.chat.side_effect = list(results)
    return FragmentGenerator(llm), llm


def _answer(**arguments) -> LLMResult:
    return LLMResult(tool_calls=[ToolCall("report_control", arguments)], input_tokens=400, output_tokens=30)


def _types(commands) -> list[str]:
    return [cmd.type for cmd in commands]


class TestFragmentRequest:
    """Test binding names derived from requests."""

    def test_default_names(self):
        assert FragmentRequest("search", "python").binding_name == "searchBox"
        assert FragmentRequest("sort", "Most recent").binding_name == "sortControl"

    def test_filter_named_after_value(self):
        assert FragmentRequest("filter", "Remote only!").binding_name == "filter_remote_only"

    def test_explicit_name_wins(self):
        assert FragmentRequest("filter", "Remote", name="remoteToggle").binding_name == "remoteToggle"

    def test_filter_without_words(self):
        assert FragmentRequest("filter", "--").binding_name == "filter"


class TestBuildFragment:
    """Test command and fix construction per control type."""

    def test_search_submits_with_enter(self):
        fragment = build_fragment(FragmentRequest("search", "python"), ControlAnswer(selector="input#q", control="input"))
        assert fragment.fixes == {"SEARCH_BOX": "input#q"}
        assert _types(fragment.commands) == ["GO_TO", "CLEAR", "TYPE", "SUBMIT", "WAIT", "WAIT_FOR"]
        assert fragment.commands[2].text == "python"

    def test_search_with_submit_button(self):
        answer = ControlAnswer(selector="input#q", control="input", submit_selector="button.go")
        fragment = build_fragment(FragmentRequest("search", "python"), answer)
        assert fragment.fixes == {"SEARCH_BOX": "input#q", "ELEMENTS.searchSubmit": "button.go"}
        assert _types(fragment.commands)[3:6] == ["GO_TO", "CLICK", "WAIT"]
        assert fragment.commands[3].name == "searchSubmit"

    def test_sort_dropdown(self):
        answer = ControlAnswer(selector="select#sort", control="dropdown", option="Date posted")
        fragment = build_fragment(FragmentRequest("sort", "Most recent"), answer)
        assert fragment.fixes == {"ELEMENTS.sortControl": "select#sort"}
        assert fragment.commands[0] == c.GoTo(name="sortControl")
        assert fragment.commands[1] == c.Select(option="Date posted")

    def test_sort_menu_button(self):
        answer = ControlAnswer(selector="button.sort", control="button", options_selector="li.recent")
        fragment = build_fragment(FragmentRequest("sort", "Most recent"), answer)
        assert fragment.fixes == {"ELEMENTS.sortControl": "button.sort", "ELEMENTS.sortControlOption": "li.recent"}
        assert _types(fragment.commands) == ["GO_TO", "CLICK", "WAIT", "GO_TO", "CLICK", "WAIT", "WAIT_FOR"]

    def test_filter_checkbox(self):
        answer = ControlAnswer(selector="input#remote", control="checkbox")
        fragment = build_fragment(FragmentRequest("filter", "Remote"), answer)
        assert fragment.name == "filter_remote"
        assert fragment.fixes == {"FILTERS.filter_remote": {"selector": "input#remote", "type": "checkbox"}}
        assert fragment.commands[:2] == [c.GoToFilter(name="filter_remote"), c.SetChecked(checked=True)]

    def test_option_defaults_to_requested_value(self):
        answer = ControlAnswer(selector="select#type", control="dropdown")
        fragment = build_fragment(FragmentRequest("filter", "Full-time"), answer)
        assert c.Select(option="Full-time") in fragment.commands

    def test_empty_selector_rejected(self):
        with pytest.raises(ValueError, match="no selector"):
            build_fragment(FragmentRequest("sort", "Newest"), ControlAnswer(selector="  "))

    def test_to_dict_uses_wire_names(self):
        fragment = build_fragment(FragmentRequest("sort", "Newest"), ControlAnswer(selector="button.sort"))
        data = fragment.to_dict()
        assert data["kind"] == "sort"
        assert data["commands"][0] == {"type": "GO_TO", "name": "sortControl"}


class TestApplyFragments:
    """Test splicing fragments into recipes and bindings."""

    def test_inserted_before_list_wait(self):
        sort = build_fragment(FragmentRequest("sort", "Newest"), ControlAnswer(selector="button.sort"))
        recipe = apply_fragments(RECIPE, [sort])
        assert recipe.commands[0] == RECIPE.commands[0]
        assert recipe.commands[1 : 1 + len(sort.commands)] == sort.commands
        assert recipe.commands[-3:] == RECIPE.commands[-3:]
        assert recipe.description == "Collect listings (with sort sortControl)"
        assert len(RECIPE.commands) == 4

    def test_inserted_before_end_without_list_steps(self):
        recipe = c.Recipe(id="r", name="R", commands=[c.OpenPage(url="https://x.example"), c.End()])
        search = build_fragment(FragmentRequest("search", "go"), ControlAnswer(selector="input#q"))
        applied = apply_fragments(recipe, [search])
        assert applied.commands[-1] == c.End()
        assert applied.commands[1] == c.GoTo(name="searchBox")

    def test_no_fragments_returns_recipe(self):
        assert apply_fragments(RECIPE, []) is RECIPE

    def test_fixes_merge_into_bindings(self):
        fragments = [
            build_fragment(FragmentRequest("search", "python"), ControlAnswer(selector="input#q")),
            build_fragment(FragmentRequest("filter", "Remote"), ControlAnswer(selector="input#remote", control="checkbox")),
        ]
        base = PageBindings.model_validate({"LIST": ".list", "LIST_ITEM": ".item", "version": 3})
        merged = merge_bindings(base, merge_fragment_fixes(fragments))
        assert merged.search_box == "input#q"
        assert merged.filters["filter_remote"].type == "checkbox"
        assert merged.version == 4


class TestFragmentGenerator:
    """Test the model-backed generator."""

    def test_sort_fragment(self):
        generator, llm = _generator(_answer(selector="select#sort", control="dropdown", option="Date"))
        result = generator.generate(FragmentRequest("sort", "Most recent"), DOM_CONTEXT, "https://jobs.example.com")
        assert result.success
        assert result.fragment.fixes == {"ELEMENTS.sortControl": "select#sort"}
        assert result.usage.api_calls == 1
        prompt = llm.chat.call_args.args[0][-1]["content"]
        assert 'sorts the list by "Most recent"' in prompt
        assert "select#sort" in prompt

    def test_hints_and_title_in_prompt(self):
        generator, llm = _generator(_answer(selector="input#q", control="input"))
        generator.generate(
            FragmentRequest("search", "python"), DOM_CONTEXT, "https://jobs.example.com", title="Jobs", hints="- searchBox: #q"
        )
        prompt = llm.chat.call_args.args[0][-1]["content"]
        assert "TITLE: Jobs" in prompt
        assert "EXPLORATION NOTES:\n- searchBox: #q" in prompt

    def test_dom_context_truncated(self):
        llm = MagicMock(spec=LLMProvider)
        llm.chat.return_value = _answer(selector="input#q")
        FragmentGenerator(llm, dom_context_max_chars=10).generate(FragmentRequest("search", "go"), DOM_CONTEXT, "u")
        prompt = llm.chat.call_args.args[0][-1]["content"]
        assert DOM_CONTEXT[:10] in prompt
        assert DOM_CONTEXT[:11] not in prompt

    def test_empty_selector_fails(self):
        generator, _ = _generator(_answer(selector=""))
        result = generator.generate(FragmentRequest("sort", "Newest"), DOM_CONTEXT, "u")
        assert not result.success
        assert "no selector" in result.error

    def test_no_answer_fails(self):
        generator, _ = _generator(LLMResult(content=""))
        result = generator.generate(FragmentRequest("filter", "Remote"), DOM_CONTEXT, "u")
        assert not result.success
        assert "report_control" in result.error

    def test_unreachable_model_fails(self):
        generator, _ = _generator(httpx.ConnectError("connection refused"))
        result = generator.generate(FragmentRequest("sort", "Newest"), DOM_CONTEXT, "u")
        assert not result.success
        assert "ConnectError" in result.error
