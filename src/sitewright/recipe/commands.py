"""Recipe and command models — declarative, site-independent action sequences.

Commands describe *what* to do ("wait for the list", "for each item:
extract details, save, mark done"); the page bindings supply *where*.
Commands are data, never code: each one is a pydantic model tagged by
its ``type`` field, and the executor dispatches on that tag.

Serialised recipes use the same camelCase keys as the bindings
(``skipProcessed``, ``maxItems``) and round-trip through JSON losslessly
via ``Recipe.model_dump(mode="json", by_alias=True)``.
"""

from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# IF conditions
# ---------------------------------------------------------------------------


class ListEnd(_Model):
    type: Literal["LIST_END"] = "LIST_END"


class PageEnd(_Model):
    type: Literal["PAGE_END"] = "PAGE_END"


class NewItems(_Model):
    """True when the list holds more items than at the last ``CHECKPOINT_COUNT``."""

    type: Literal["NEW_ITEMS"] = "NEW_ITEMS"


class Exists(_Model):
    type: Literal["EXISTS"] = "EXISTS"
    name: str


class Visible(_Model):
    type: Literal["VISIBLE"] = "VISIBLE"
    name: str


class Not(_Model):
    type: Literal["NOT"] = "NOT"
    condition: Condition


class AllOf(_Model):
    type: Literal["AND"] = "AND"
    conditions: list[Condition]


class AnyOf(_Model):
    type: Literal["OR"] = "OR"
    conditions: list[Condition]


Condition = Annotated[
    Union[ListEnd, PageEnd, NewItems, Exists, Visible, Not, AllOf, AnyOf],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# REPEAT until-conditions
# ---------------------------------------------------------------------------


class Collected(_Model):
    type: Literal["COLLECTED"] = "COLLECTED"
    count: int


class NoMoreItems(_Model):
    """Three consecutive iterations without a new item."""

    type: Literal["NO_MORE_ITEMS"] = "NO_MORE_ITEMS"


class MaxScrolls(_Model):
    type: Literal["MAX_SCROLLS"] = "MAX_SCROLLS"
    count: int


class UntilAnyOf(_Model):
    type: Literal["OR"] = "OR"
    conditions: list[UntilCondition]


class UntilAllOf(_Model):
    type: Literal["AND"] = "AND"
    conditions: list[UntilCondition]


UntilCondition = Annotated[
    Union[Collected, NoMoreItems, MaxScrolls, UntilAnyOf, UntilAllOf],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

# Navigation


class OpenPage(_Model):
    type: Literal["OPEN_PAGE"] = "OPEN_PAGE"
    url: str


class GoBack(_Model):
    type: Literal["GO_BACK"] = "GO_BACK"


# Waiting


class WaitFor(_Model):
    type: Literal["WAIT_FOR"] = "WAIT_FOR"
    target: Literal["page", "list", "listUpdate", "details"]


class Wait(_Model):
    type: Literal["WAIT"] = "WAIT"
    seconds: float


# Focus


class GoTo(_Model):
    """Focus a named element: ``searchBox``, ``list``, ``details`` or an ``ELEMENTS`` key."""

    type: Literal["GO_TO"] = "GO_TO"
    name: str


class GoToFilter(_Model):
    type: Literal["GO_TO_FILTER"] = "GO_TO_FILTER"
    name: str


class GoToItem(_Model):
    type: Literal["GO_TO_ITEM"] = "GO_TO_ITEM"
    which: Literal["first", "next", "current", "unprocessed"] = "next"


# Actions


class TypeText(_Model):
    type: Literal["TYPE"] = "TYPE"
    text: str


class Submit(_Model):
    type: Literal["SUBMIT"] = "SUBMIT"


class Click(_Model):
    type: Literal["CLICK"] = "CLICK"


class ClickIfExists(_Model):
    type: Literal["CLICK_IF_EXISTS"] = "CLICK_IF_EXISTS"
    name: str


class Select(_Model):
    type: Literal["SELECT"] = "SELECT"
    option: str


class Clear(_Model):
    type: Literal["CLEAR"] = "CLEAR"


class SetChecked(_Model):
    type: Literal["SET_CHECKED"] = "SET_CHECKED"
    checked: bool


# Scrolling


class Scroll(_Model):
    type: Literal["SCROLL"] = "SCROLL"
    direction: Literal["up", "down"] = "down"
    target: Literal["list", "page"] = "list"


class ScrollIfNotEnd(_Model):
    type: Literal["SCROLL_IF_NOT_END"] = "SCROLL_IF_NOT_END"
    target: Literal["list", "page"] = "list"


# Data


class ExtractDetails(_Model):
    type: Literal["EXTRACT_DETAILS"] = "EXTRACT_DETAILS"
    selectors: Optional[list[str]] = None


class Save(_Model):
    type: Literal["SAVE"] = "SAVE"
    as_: str = Field(default="item", alias="as")


class MarkDone(_Model):
    type: Literal["MARK_DONE"] = "MARK_DONE"


# Flow control


class ForEachItemInList(_Model):
    type: Literal["FOR_EACH_ITEM_IN_LIST"] = "FOR_EACH_ITEM_IN_LIST"
    body: list[Command]
    skip_processed: bool = Field(default=True, alias="skipProcessed")


class If(_Model):
    type: Literal["IF"] = "IF"
    condition: Condition
    then: list[Command]
    else_: list[Command] = Field(default_factory=list, alias="else")


class CheckpointCount(_Model):
    type: Literal["CHECKPOINT_COUNT"] = "CHECKPOINT_COUNT"


class Repeat(_Model):
    type: Literal["REPEAT"] = "REPEAT"
    body: list[Command]
    until: UntilCondition


class End(_Model):
    type: Literal["END"] = "END"


Command = Annotated[
    Union[
        OpenPage,
        GoBack,
        WaitFor,
        Wait,
        GoTo,
        GoToFilter,
        GoToItem,
        TypeText,
        Submit,
        Click,
        ClickIfExists,
        Select,
        Clear,
        SetChecked,
        Scroll,
        ScrollIfNotEnd,
        ExtractDetails,
        Save,
        MarkDone,
        ForEachItemInList,
        If,
        CheckpointCount,
        Repeat,
        End,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Recipe
# ---------------------------------------------------------------------------


class RecipeConfig(_Model):
    max_items: Optional[int] = Field(default=None, alias="maxItems", ge=1)
    timeout: Optional[float] = Field(default=None, gt=0, description="Whole-run budget in seconds.")


class Recipe(_Model):
    """An ordered command list plus run limits."""

    id: str
    name: str
    description: str = ""
    commands: list[Command]
    config: RecipeConfig = Field(default_factory=RecipeConfig)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


for _model in (Not, AllOf, AnyOf, UntilAnyOf, UntilAllOf, ForEachItemInList, If, Repeat, Recipe):
    _model.model_rebuild()

command_adapter: TypeAdapter[Command] = TypeAdapter(Command)
