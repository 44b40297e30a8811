"""Built-in recipe templates.

Each template is a function of the start URL (and any search query)
returning a ready-to-run ``Recipe``.  They cover the common listing
shape: open the page, wait for the list, process every item, reveal
more items, repeat until enough are collected or the list runs out.
"""

from __future__ import annotations

from typing import Callable

from sitewright.recipe.commands import (
    CheckpointCount,
    Collected,
    End,
    ExtractDetails,
    ForEachItemInList,
    GoTo,
    If,
    MarkDone,
    NewItems,
    NoMoreItems,
    OpenPage,
    Recipe,
    RecipeConfig,
    Repeat,
    Save,
    ScrollIfNotEnd,
    Submit,
    TypeText,
    UntilAnyOf,
    Wait,
    WaitFor,
)


def _collect_loop(max_items: int) -> Repeat:
    return Repeat(
        body=[
            ForEachItemInList(body=[ExtractDetails(), Save(as_="item"), MarkDone()]),
            CheckpointCount(),
            ScrollIfNotEnd(target="list"),
            If(condition=NewItems(), then=[WaitFor(target="listUpdate")], else_=[Wait(seconds=1)]),
        ],
        until=UntilAnyOf(conditions=[Collected(count=max_items), NoMoreItems()]),
    )


def listing_extraction(url: str, max_items: int = 20) -> Recipe:
    """Open *url* and collect up to *max_items* list entries."""
    return Recipe(
        id="listing_extraction",
        name="Listing Extraction",
        description="Process every list item, revealing more until enough are collected.",
        commands=[
            OpenPage(url=url),
            WaitFor(target="page"),
            WaitFor(target="list"),
            _collect_loop(max_items),
            End(),
        ],
        config=RecipeConfig(max_items=max_items),
    )


def listing_with_search(url: str, query: str, max_items: int = 20) -> Recipe:
    """Search for *query* first, then collect results like ``listing_extraction``."""
    return Recipe(
        id="listing_with_search",
        name="Listing with Search",
        description="Type a query into the search box, submit, then collect results.",
        commands=[
            OpenPage(url=url),
            WaitFor(target="page"),
            GoTo(name="searchBox"),
            TypeText(text=query),
            Submit(),
            WaitFor(target="list"),
            _collect_loop(max_items),
            End(),
        ],
        config=RecipeConfig(max_items=max_items),
    )


def single_pass(url: str, max_items: int = 20) -> Recipe:
    """Collect only what is visible on the first load; no scrolling."""
    return Recipe(
        id="single_pass",
        name="Single Pass",
        commands=[
            OpenPage(url=url),
            WaitFor(target="list"),
            ForEachItemInList(body=[ExtractDetails(), Save(as_="item"), MarkDone()]),
            End(),
        ],
        config=RecipeConfig(max_items=max_items),
    )


TEMPLATES: dict[str, Callable[..., Recipe]] = {
    "listing_extraction": listing_extraction,
    "listing_with_search": listing_with_search,
    "single_pass": single_pass,
}
