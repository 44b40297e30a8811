"""Recipe fragments for search, sort and filter controls.

The model is only asked *where* a control is and *what kind* of control
it is.  The commands are built here from that answer, and the selectors
go into the bindings (``SEARCH_BOX``, ``ELEMENTS.<name>``,
``FILTERS.<name>``) rather than into the commands, so a fragment heals
through the same fix path as every other binding.

Usage::

    generator = FragmentGenerator(llm)
    result = generator.generate(FragmentRequest("sort", "Most recent"), dom_context, url)
    if result.success:
        recipe = apply_fragments(recipe, [result.fragment])
        bindings = merge_bindings(bindings, result.fragment.fixes)
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from sitewright.exceptions import ModelInvocationError
from sitewright.llm.base import LLMProvider
from sitewright.llm.structured import TokenUsage, invoke_structured
from sitewright.recipe import commands as c

logger = logging.getLogger(__name__)

FragmentKind = Literal["search", "sort", "filter"]

_NAME_RE = re.compile(r"[^a-zA-Z0-9]+")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You locate one control on a listing page (job board, product grid, search results) \
so an automation recipe can operate it.

RULES:
1. Use ONLY selectors that EXIST in the provided DOM. The text after "@" on each \
line is a full selector for that element; prefer a shorter id, data attribute or class \
selector when one is visible.
2. control is "dropdown" for <select> elements, "input" for text fields, \
"checkbox" for checkboxes and toggles, "button" for anything that is clicked.
3. option is the visible label to pick (dropdown option, or the button or menu entry \
to click) and must match the page's wording.
4. When clicking the control opens a menu, set options_selector to the menu entry.

Answer by calling the report_control tool."""

USER_TEMPLATE = """\
Find the {kind} control on this page.

URL: {url}
TITLE: {title}
GOAL: {goal}
{hints}
DOM ELEMENTS:
{elements}"""

_GOALS = {
    "search": 'the search box used to search for "{value}", and its submit button if Enter does not submit',
    "sort": 'the control that sorts the list by "{value}"',
    "filter": 'the control that filters the list to "{value}"',
}

_DEFAULT_NAMES = {"search": "searchBox", "sort": "sortControl"}


# ---------------------------------------------------------------------------
# Answer schema
# ---------------------------------------------------------------------------


class ControlAnswer(BaseModel):
    """Report the page control and how to operate it."""

    selector: str = Field(description="CSS selector of the control, copied from the DOM")
    control: Literal["dropdown", "input", "checkbox", "button"] = Field(
        default="button", description="dropdown | input | checkbox | button"
    )
    option: Optional[str] = Field(default=None, description="Visible label of the option to pick, if any")
    options_selector: Optional[str] = Field(default=None, description="Menu entry to click after opening the control")
    submit_selector: Optional[str] = Field(default=None, description="Search submit button, null when Enter submits")


# ---------------------------------------------------------------------------
# Requests and results
# ---------------------------------------------------------------------------


@dataclass
class FragmentRequest:
    """What to add to a recipe.

    Attributes:
        kind: ``search``, ``sort`` or ``filter``.
        value: The query to search for, or the sort order or filter
            wanted, in the user's words (e.g. ``"Most recent"``).
        name: Binding name for the control.  Defaults to ``searchBox``
            and ``sortControl``; filters are named after *value*.
    """

    kind: FragmentKind
    value: str
    name: Optional[str] = None

    @property
    def binding_name(self) -> str:
        if self.name:
            return self.name
        if self.kind in _DEFAULT_NAMES:
            return _DEFAULT_NAMES[self.kind]
        words = [w for w in _NAME_RE.split(self.value.lower()) if w]
        return "filter_" + "_".join(words) if words else "filter"


@dataclass
class RecipeFragment:
    kind: FragmentKind
    name: str
    commands: list[c.Command]
    fixes: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "commands": [cmd.model_dump(mode="json", by_alias=True) for cmd in self.commands],
            "fixes": self.fixes,
        }


@dataclass
class FragmentResult:
    success: bool
    fragment: RecipeFragment | None = None
    error: str | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)


# ---------------------------------------------------------------------------
# Command building
# ---------------------------------------------------------------------------


def _settle() -> list[c.Command]:
    return [c.Wait(seconds=1), c.WaitFor(target="list")]


def build_fragment(request: FragmentRequest, answer: ControlAnswer) -> RecipeFragment:
    """Turn a located control into commands plus a bindings patch.

    Raises:
        ValueError: The answer cannot be operated, e.g. a dropdown with
            nothing to pick.
    """
    selector = answer.selector.strip()
    if not selector:
        raise ValueError(f"{request.kind}: no selector for the control")
    name = request.binding_name
    option = (answer.option or "").strip() or request.value
    fixes: dict[str, Any] = {}
    commands: list[c.Command] = []

    if request.kind == "search":
        fixes["SEARCH_BOX"] = selector
        commands += [c.GoTo(name="searchBox"), c.Clear(), c.TypeText(text=request.value)]
        if answer.submit_selector:
            fixes["ELEMENTS.searchSubmit"] = answer.submit_selector
            commands += [c.GoTo(name="searchSubmit"), c.Click()]
        else:
            commands.append(c.Submit())
        return RecipeFragment(request.kind, "searchBox", commands + _settle(), fixes)

    if request.kind == "sort":
        fixes[f"ELEMENTS.{name}"] = selector
        commands.append(c.GoTo(name=name))
    else:
        fixes[f"FILTERS.{name}"] = {
            "selector": selector,
            "type": answer.control,
            **({"optionsSelector": answer.options_selector} if answer.options_selector else {}),
        }
        commands.append(c.GoToFilter(name=name))

    if answer.control == "dropdown":
        commands.append(c.Select(option=option))
    elif answer.control == "checkbox":
        commands.append(c.SetChecked(checked=True))
    elif answer.control == "input":
        commands += [c.Clear(), c.TypeText(text=option), c.Submit()]
    else:
        commands.append(c.Click())
        if answer.options_selector:
            option_name = f"{name}Option"
            fixes[f"ELEMENTS.{option_name}"] = answer.options_selector
            commands += [c.Wait(seconds=0.5), c.GoTo(name=option_name), c.Click()]

    return RecipeFragment(request.kind, name, commands + _settle(), fixes)


def _insertion_index(commands: Sequence[c.Command]) -> int:
    # Before the first list wait or item loop; otherwise before END
    for i, command in enumerate(commands):
        if isinstance(command, c.WaitFor) and command.target == "list":
            return i
        if isinstance(command, (c.ForEachItemInList, c.Repeat)):
            return i
    for i, command in enumerate(commands):
        if isinstance(command, c.End):
            return i
    return len(commands)


def apply_fragments(recipe: c.Recipe, fragments: Sequence[RecipeFragment]) -> c.Recipe:
    """Return a copy of *recipe* with the fragments' commands spliced in, in order."""
    if not fragments:
        return recipe
    commands = list(recipe.commands)
    at = _insertion_index(commands)
    added = [cmd for fragment in fragments for cmd in fragment.commands]
    kinds = ", ".join(f"{f.kind} {f.name}" for f in fragments)
    return recipe.model_copy(
        update={
            "commands": commands[:at] + added + commands[at:],
            "description": f"{recipe.description} (with {kinds})".strip(),
        }
    )


def merge_fragment_fixes(fragments: Sequence[RecipeFragment]) -> dict[str, Any]:
    fixes: dict[str, Any] = {}
    for fragment in fragments:
        fixes.update(fragment.fixes)
    return fixes


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


class FragmentGenerator:
    """Locates search, sort and filter controls with the language model.

    Args:
        llm: Provider for the locating call.
        dom_context_max_chars: Cap on the DOM context in the prompt.
    """

    def __init__(self, llm: LLMProvider, *, dom_context_max_chars: int = 20_000) -> None:
        self._llm = llm
        self._dom_context_max_chars = dom_context_max_chars

    def generate(
        self,
        request: FragmentRequest,
        dom_context: str,
        url: str,
        *,
        title: str = "",
        hints: str | None = None,
    ) -> FragmentResult:
        usage = TokenUsage()
        logger.info("Generating %s fragment for %s: %s", request.kind, url, request.value)
        prompt = USER_TEMPLATE.format(
            kind=request.kind,
            url=url,
            title=title,
            goal=_GOALS[request.kind].format(value=request.value),
            hints=f"\nEXPLORATION NOTES:\n{hints}\n" if hints else "",
            elements=dom_context[: self._dom_context_max_chars],
        )
        try:
            answer = invoke_structured(
                self._llm,
                system=SYSTEM_PROMPT,
                prompt=prompt,
                schema=ControlAnswer,
                tool_name="report_control",
                usage=usage,
            )
            fragment = build_fragment(request, answer)
        except (ModelInvocationError, ValueError) as e:
            logger.error("%s fragment generation failed: %s", request.kind.capitalize(), e)
            return FragmentResult(success=False, error=str(e), usage=usage)

        logger.info("%s fragment ready: %d command(s), %s", request.kind.capitalize(), len(fragment.commands), fragment.fixes)
        return FragmentResult(success=True, fragment=fragment, usage=usage)
