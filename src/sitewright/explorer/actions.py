"""Explorer actions — the closed set of things the decision agent may do.

Each action is a pydantic model tagged by ``type``; the tool name the
model calls is the tag.  Anything outside the set fails validation.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from sitewright.exceptions import ModelInvocationError


class ClickAction(BaseModel):
    """Click an element. May open modals, navigate, toggle state, or load content."""

    type: Literal["click"] = "click"
    selector: str = Field(description='CSS selector, copied exactly from [CLICK: "..."] in the DOM')
    reason: str = Field(default="", description="What you expect to learn or happen")


class ScrollAction(BaseModel):
    """Scroll to reveal more content, pagination, or hidden elements."""

    type: Literal["scroll"] = "scroll"
    direction: Literal["down", "up"] = Field(default="down", description="Direction to scroll")
    reason: str = Field(default="", description="What you hope to find")


class TypeTextAction(BaseModel):
    """Type text into an input field."""

    type: Literal["type_text"] = "type_text"
    selector: str = Field(description="CSS selector of the input")
    text: str = Field(description="Text to type")
    reason: str = Field(default="", description="Why you are typing this")


class ObserveAction(BaseModel):
    """Get a fresh snapshot of the page. Use after actions that changed content without navigation."""

    type: Literal["observe"] = "observe"
    what: str = Field(default="", description='What you want to see, e.g. "modal contents", "updated list"')


class DoneAction(BaseModel):
    """Call when you understand enough to explain how to accomplish the task on this site."""

    type: Literal["done"] = "done"
    understanding: str = Field(description="Full explanation of how the site works and how to accomplish the task")
    page_type: str = Field(default="", description="What kind of page this is, e.g. search results, listing, form")
    key_findings: list[str] = Field(
        default_factory=list,
        description="Specific discoveries: what buttons do, how navigation works, what filters exist",
    )


ExplorerAction = Annotated[
    Union[ClickAction, ScrollAction, TypeTextAction, ObserveAction, DoneAction],
    Field(discriminator="type"),
]

ACTION_MODELS: dict[str, type[BaseModel]] = {
    "click": ClickAction,
    "scroll": ScrollAction,
    "type_text": TypeTextAction,
    "observe": ObserveAction,
    "done": DoneAction,
}

action_adapter: TypeAdapter[ExplorerAction] = TypeAdapter(ExplorerAction)


def parse_action(name: str, arguments: dict[str, Any]) -> ExplorerAction:
    """Validate a tool call as an explorer action.

    Raises:
        ModelInvocationError: Unknown tool name or invalid arguments.
    """
    if name not in ACTION_MODELS:
        raise ModelInvocationError(f"unknown explorer action {name!r}")
    try:
        return action_adapter.validate_python({**arguments, "type": name})
    except ValidationError as e:
        raise ModelInvocationError(f"invalid {name} arguments ({e.error_count()} errors)", raw=str(arguments)) from e


def describe_action(action: ExplorerAction) -> str:
    """Short human-readable form used in logs, observations and edges."""
    if isinstance(action, ClickAction):
        return f'click "{action.selector}"'
    if isinstance(action, ScrollAction):
        return f"scroll {action.direction}"
    if isinstance(action, TypeTextAction):
        return f'type "{action.text}" into "{action.selector}"'
    if isinstance(action, ObserveAction):
        return f"observe {action.what}".strip()
    return "done"


def action_selector(action: ExplorerAction) -> str | None:
    return getattr(action, "selector", None)
