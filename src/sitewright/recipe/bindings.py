"""Page bindings: where things are on one specific site.

A recipe says *what* to do ("go to the list, open each item, extract
the details"); bindings say *where* those things are for a given page.
They are discovered by the navigator model, cached by the binding
store, and repaired in-flight by the executor's fix callback.

Bindings serialise with the uppercase semantic keys (``LIST``,
``LIST_ITEM``, ``ITEM_ID`` ...) plus ``id``, ``urlPattern``,
``version`` and ``updatedAt``; ``to_json_dict`` / ``model_validate``
round-trip losslessly.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScrollBehavior(str, Enum):
    """How more list items are revealed."""

    INFINITE = "infinite"
    PAGINATED = "paginated"
    LOAD_MORE_BUTTON = "load_more_button"
    STATIC = "static"


class ClickBehavior(str, Enum):
    """What clicking a list item does."""

    SHOWS_PANEL = "shows_panel"
    NAVIGATES = "navigates"
    EXPANDS = "expands"
    INLINE = "inline"


class ReturnToList(str, Enum):
    """How to get back to the list after viewing an item that navigated away."""

    GO_BACK = "go_back"
    CLICK_CLOSE = "click_close"
    NONE = "none"


# ---------------------------------------------------------------------------
# Conditions and extractors
# ---------------------------------------------------------------------------


class CountAtLeast(BaseModel):
    selector: str
    count: int


class StateCondition(BaseModel):
    """Predicate over the live page used to detect page states.

    Every populated field must hold; ``and``/``or`` nest further
    conditions.  An empty condition is trivially true.
    """

    model_config = ConfigDict(populate_by_name=True)

    exists: Optional[str] = None
    visible: Optional[str] = None
    gone: Optional[str] = None
    count_changed: Optional[str] = Field(default=None, alias="countChanged")
    count_at_least: Optional[CountAtLeast] = Field(default=None, alias="countAtLeast")
    url_contains: Optional[str] = Field(default=None, alias="urlContains")
    url_matches: Optional[str] = Field(default=None, alias="urlMatches")
    all_of: Optional[list[StateCondition]] = Field(default=None, alias="and")
    any_of: Optional[list[StateCondition]] = Field(default=None, alias="or")

    def describe(self) -> str:
        """Compact JSON form used in logs and timeout messages."""
        return json.dumps(self.model_dump(mode="json", by_alias=True, exclude_none=True))

    def selectors(self) -> list[str]:
        """Every selector referenced by this condition tree."""
        found = [s for s in (self.exists, self.visible, self.gone, self.count_changed) if s]
        if self.count_at_least:
            found.append(self.count_at_least.selector)
        for child in (self.all_of or []) + (self.any_of or []):
            found.extend(child.selectors())
        return found


class ItemIdExtractor(BaseModel):
    """How to derive a unique id for one list item."""

    model_config = ConfigDict(populate_by_name=True)

    source: Literal["attribute", "href", "text", "data"] = Field(alias="from")
    selector: Optional[str] = None
    attribute: Optional[str] = None
    pattern: Optional[str] = None


class FilterBinding(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    selector: str
    type: Literal["dropdown", "checkbox", "button", "input"] = "button"
    options_selector: Optional[str] = Field(default=None, alias="optionsSelector")


# ---------------------------------------------------------------------------
# PageBindings
# ---------------------------------------------------------------------------


class PageBindings(BaseModel):
    """Selectors, state conditions and behaviour flags for one site."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    url_pattern: str = Field(default="", alias="urlPattern")
    version: int = 1
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    # Element selectors
    search_box: Optional[str] = Field(default=None, alias="SEARCH_BOX")
    search_submit: Optional[str] = Field(default=None, alias="SEARCH_SUBMIT")
    list_container: str = Field(default="", alias="LIST")
    list_item: str = Field(default="", alias="LIST_ITEM")
    list_item_active: Optional[str] = Field(default=None, alias="LIST_ITEM_ACTIVE")
    details_panel: Optional[str] = Field(default=None, alias="DETAILS_PANEL")
    details_content: list[str] = Field(default_factory=list, alias="DETAILS_CONTENT")
    filters: dict[str, FilterBinding] = Field(default_factory=dict, alias="FILTERS")
    elements: dict[str, str] = Field(default_factory=dict, alias="ELEMENTS")
    scroll_container: Optional[str] = Field(default=None, alias="SCROLL_CONTAINER")
    load_more_button: Optional[str] = Field(default=None, alias="LOAD_MORE_BUTTON")
    next_page_button: Optional[str] = Field(default=None, alias="NEXT_PAGE_BUTTON")
    close_details_button: Optional[str] = Field(default=None, alias="CLOSE_DETAILS_BUTTON")

    # State detection
    page_loaded: Optional[StateCondition] = Field(default=None, alias="PAGE_LOADED")
    list_loaded: Optional[StateCondition] = Field(default=None, alias="LIST_LOADED")
    list_updated: Optional[StateCondition] = Field(default=None, alias="LIST_UPDATED")
    details_loaded: Optional[StateCondition] = Field(default=None, alias="DETAILS_LOADED")
    no_more_items: Optional[StateCondition] = Field(default=None, alias="NO_MORE_ITEMS")
    list_empty: Optional[StateCondition] = Field(default=None, alias="LIST_EMPTY")
    loading: Optional[StateCondition] = Field(default=None, alias="LOADING")

    # Item identification and behaviour
    item_id: Optional[ItemIdExtractor] = Field(default=None, alias="ITEM_ID")
    scroll_behavior: ScrollBehavior = Field(default=ScrollBehavior.STATIC, alias="SCROLL_BEHAVIOR")
    click_behavior: ClickBehavior = Field(default=ClickBehavior.INLINE, alias="CLICK_BEHAVIOR")
    return_to_list: Optional[ReturnToList] = Field(default=None, alias="RETURN_TO_LIST")

    def to_json_dict(self) -> dict[str, Any]:
        """Serialise with the uppercase semantic keys, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def get_key(self, key: str) -> Any:
        """Look up a binding by its serialised key; ``ELEMENTS.name`` reaches into maps."""
        data = self.to_json_dict()
        head, _, tail = key.partition(".")
        value = data.get(head)
        if tail:
            return value.get(tail) if isinstance(value, dict) else None
        return value


class ValidationReport(BaseModel):
    """Structural validation outcome for a ``PageBindings``."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation, freshness, merge
# ---------------------------------------------------------------------------


def validate_bindings(bindings: PageBindings) -> ValidationReport:
    """Structural checks only; nothing here touches a live page."""
    errors: list[str] = []
    warnings: list[str] = []

    if not bindings.list_container:
        errors.append("LIST selector is required")
    if not bindings.list_item:
        errors.append("LIST_ITEM selector is required")
    if bindings.item_id is None:
        errors.append("ITEM_ID extractor is required")
    else:
        if bindings.item_id.source == "attribute" and not bindings.item_id.attribute:
            errors.append("ITEM_ID.attribute required when ITEM_ID.from is attribute")
        if bindings.item_id.pattern:
            try:
                re.compile(bindings.item_id.pattern)
            except re.error as e:
                errors.append(f"ITEM_ID.pattern is not a valid regex: {e}")

    if bindings.scroll_behavior == ScrollBehavior.LOAD_MORE_BUTTON and not bindings.load_more_button:
        errors.append("LOAD_MORE_BUTTON required when SCROLL_BEHAVIOR is load_more_button")
    if bindings.scroll_behavior == ScrollBehavior.PAGINATED and not bindings.next_page_button:
        errors.append("NEXT_PAGE_BUTTON required when SCROLL_BEHAVIOR is paginated")
    if bindings.click_behavior == ClickBehavior.NAVIGATES and not bindings.return_to_list:
        warnings.append("RETURN_TO_LIST recommended when CLICK_BEHAVIOR is navigates")

    if not bindings.details_content:
        warnings.append("DETAILS_CONTENT not set - falling back to DETAILS_PANEL or item text")
    if bindings.list_loaded is None:
        warnings.append("LIST_LOADED condition not set")
    if bindings.details_loaded is None:
        warnings.append("DETAILS_LOADED condition not set")
    if bindings.page_loaded is None:
        warnings.append("PAGE_LOADED condition not set - using default")
    if bindings.no_more_items is None:
        warnings.append("NO_MORE_ITEMS condition not set - may not detect end of list")

    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def binding_age_hours(bindings: PageBindings, now: datetime | None = None) -> float:
    """Hours since ``updatedAt``; infinite when never stamped."""
    if bindings.updated_at is None:
        return float("inf")
    now = now or datetime.now(timezone.utc)
    updated = bindings.updated_at
    if updated.tzinfo is None:
        updated = updated.replace(tzinfo=timezone.utc)
    return (now - updated).total_seconds() / 3600


def is_fresh(bindings: PageBindings, now: datetime | None = None, freshness_hours: float = 24.0) -> bool:
    """True iff the bindings are younger than the freshness window and valid."""
    if binding_age_hours(bindings, now) >= freshness_hours:
        return False
    return validate_bindings(bindings).valid


def merge_bindings(base: PageBindings, fixes: dict[str, Any]) -> PageBindings:
    """Apply *fixes* (keyed by serialised binding key) on top of *base*.

    ``FILTERS`` and ``ELEMENTS`` are merged key by key; dotted keys such
    as ``ELEMENTS.sortDropdown`` address a single map entry.  The version
    is bumped and ``updatedAt`` stamped.
    """
    data = base.to_json_dict()
    for key, value in fixes.items():
        head, _, tail = key.partition(".")
        if tail and head in ("ELEMENTS", "FILTERS"):
            data.setdefault(head, {})[tail] = value
        elif head in ("ELEMENTS", "FILTERS") and isinstance(value, dict):
            data[head] = {**data.get(head, {}), **value}
        else:
            data[key] = value
    data["version"] = base.version + 1
    data["updatedAt"] = datetime.now(timezone.utc).isoformat()
    return PageBindings.model_validate(data)


# ---------------------------------------------------------------------------
# Example bindings
# ---------------------------------------------------------------------------

EXAMPLE_BINDINGS: dict[str, dict[str, Any]] = {
    "linkedin_jobs": {
        "id": "linkedin_jobs_v1",
        "urlPattern": "linkedin.com/jobs",
        "version": 1,
        "SEARCH_BOX": ".jobs-search-box__text-input",
        "LIST": ".jobs-search-results-list",
        "LIST_ITEM": ".jobs-search-results__list-item",
        "LIST_ITEM_ACTIVE": ".jobs-search-results__list-item--active",
        "DETAILS_PANEL": ".jobs-details",
        "DETAILS_CONTENT": [".jobs-unified-top-card", ".jobs-description-content"],
        "ELEMENTS": {
            "sortDropdown": ".jobs-search-sort-button",
            "showResults": ".filter-show-results-button",
        },
        "SCROLL_CONTAINER": ".jobs-search-results-list",
        "PAGE_LOADED": {"exists": ".jobs-search-results-list"},
        "LIST_LOADED": {"exists": ".jobs-search-results__list-item"},
        "LIST_UPDATED": {"countChanged": ".jobs-search-results__list-item"},
        "DETAILS_LOADED": {"exists": ".jobs-description-content"},
        "NO_MORE_ITEMS": {
            "or": [
                {"exists": ".jobs-search-no-results"},
                {"exists": '.jobs-search-results__list-item[data-is-last="true"]'},
            ]
        },
        "LOADING": {"exists": ".jobs-search-results__loader"},
        "ITEM_ID": {"from": "href", "selector": 'a[href*="/jobs/view/"]', "pattern": r"/jobs/view/(\d+)"},
        "SCROLL_BEHAVIOR": "infinite",
        "CLICK_BEHAVIOR": "shows_panel",
    },
    "indeed_jobs": {
        "id": "indeed_jobs_v1",
        "urlPattern": "indeed.com/jobs",
        "version": 1,
        "SEARCH_BOX": "#text-input-what",
        "LIST": ".jobsearch-ResultsList",
        "LIST_ITEM": ".job_seen_beacon",
        "DETAILS_PANEL": ".jobsearch-ViewJobLayout",
        "DETAILS_CONTENT": [".jobsearch-JobInfoHeader", ".jobsearch-JobComponent-description"],
        "ELEMENTS": {
            "sortDropdown": "#filter-dateposted",
            "findJobsButton": ".yosegi-InlineWhatWhere-primaryButton",
        },
        "PAGE_LOADED": {"exists": ".jobsearch-ResultsList"},
        "LIST_LOADED": {"exists": ".job_seen_beacon"},
        "LIST_UPDATED": {"countChanged": ".job_seen_beacon"},
        "DETAILS_LOADED": {"exists": ".jobsearch-JobComponent-description"},
        "NO_MORE_ITEMS": {"exists": ".jobsearch-NoResults"},
        "ITEM_ID": {"from": "attribute", "selector": "a[data-jk]", "attribute": "data-jk"},
        "SCROLL_BEHAVIOR": "paginated",
        "NEXT_PAGE_BUTTON": '[data-testid="pagination-page-next"]',
        "CLICK_BEHAVIOR": "shows_panel",
    },
}


def example_bindings(name: str) -> PageBindings:
    """A fresh ``PageBindings`` copy of a bundled example, stamped now."""
    data = dict(EXAMPLE_BINDINGS[name])
    data["updatedAt"] = datetime.now(timezone.utc).isoformat()
    return PageBindings.model_validate(data)
