"""Recipe executor — run commands against a live page using bindings.

The executor translates site-independent commands into driver calls
through the current ``PageBindings``:

* **Conditions** (``PAGE_LOADED``, ``LIST_UPDATED`` ...) are polled
  every ``poll_interval_sec`` until ``wait_timeout_sec``.
* **FOR_EACH_ITEM_IN_LIST** re-captures the page before every item,
  derives each item's id from ``ITEM_ID`` (falling back to the element
  identity hash) and skips ids already processed.
* **Self-healing**: when a top-level command fails and maps to a
  binding key, a ``BindingFixRequest`` goes to the injected callback.
  A returned fix is merged into the *working* bindings and the command
  is retried once.  Persisting repaired bindings is the runner's job.
* **Budgets**: ``END``, ``config.maxItems``, ``config.timeout`` and an
  external stop event all end the run.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from sitewright.dom.identity import identity, identity_from_parts
from sitewright.dom.render import render_dom_context
from sitewright.dom.snapshot import Snapshot, capture
from sitewright.driver.base import ElementInfo, PageDriver
from sitewright.exceptions import (
    ConditionTimeoutError,
    DriverDisconnectedError,
    SelectorResolutionError,
    SitewrightError,
)
from sitewright.recipe import commands as c
from sitewright.recipe.bindings import ClickBehavior, PageBindings, ReturnToList, ScrollBehavior, StateCondition, merge_bindings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class ExtractedItem(BaseModel):
    """Raw content captured for one list item."""

    id: str
    content: str
    kind: str = "item"
    data: dict[str, Any] = Field(default_factory=dict)
    extracted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ExecutionStats(BaseModel):
    commands_executed: int = 0
    items_processed: int = 0
    scrolls_performed: int = 0
    binding_fixes: int = 0
    duration_sec: float = 0.0


class ExecutionResult(BaseModel):
    """Outcome of one recipe execution.  Items are kept even on failure."""

    success: bool
    items: list[ExtractedItem] = Field(default_factory=list)
    stats: ExecutionStats = Field(default_factory=ExecutionStats)
    error: Optional[str] = None
    logs: list[str] = Field(default_factory=list)


class BindingFixRequest(BaseModel):
    """Everything the navigator needs to repair one binding."""

    command: c.Command
    binding: str
    current_value: Any = None
    error: str
    dom_context: str = ""


BindingFixCallback = Callable[[BindingFixRequest], Awaitable[Optional[dict[str, Any]]]]


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


@dataclass
class _Item:
    index: int
    id: str
    info: ElementInfo


@dataclass
class _Outcome:
    success: bool
    error: str = ""


@dataclass
class ExecutionContext:
    """Mutable state for one run; never shared between runs."""

    processed_ids: set[str] = field(default_factory=set)
    collected: list[ExtractedItem] = field(default_factory=list)
    current_selector: Optional[str] = None
    current_item: Optional[_Item] = None
    current_item_index: int = -1
    extracted_content: Optional[str] = None
    checkpoint_item_count: int = 0
    no_new_items_count: int = 0
    should_stop: bool = False
    timed_out: bool = False


# Top-level command → binding key consulted when asking for a fix.
_WAIT_TARGET_BINDINGS = {
    "list": "LIST_LOADED",
    "details": "DETAILS_LOADED",
    "page": "PAGE_LOADED",
    "listUpdate": "LIST_UPDATED",
}
_GO_TO_BINDINGS = {"list": "LIST", "details": "DETAILS_PANEL", "searchBox": "SEARCH_BOX"}


class RecipeExecutor:
    """Executes a recipe's commands sequentially against a page driver.

    Args:
        driver: The page driver for this session (owned exclusively).
        bindings: Starting bindings; fixes are applied to a working copy.
        on_binding_error: Async callback returning binding fixes, or None.
        settings: Recipe limits; defaults to ``get_settings().recipe``.
        stop_event: Polled between commands; setting it ends the run.
    """

    def __init__(
        self,
        driver: PageDriver,
        bindings: PageBindings,
        *,
        on_binding_error: BindingFixCallback | None = None,
        settings: Any = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        if settings is None:
            from sitewright.settings import get_settings

            settings = get_settings().recipe
        self._driver = driver
        self._bindings = bindings
        self._on_binding_error = on_binding_error
        self._settings = settings
        self._stop_event = stop_event
        self._ctx = ExecutionContext()
        self._stats = ExecutionStats()
        self._logs: list[str] = []
        self._deadline: float | None = None
        self._max_items: int | None = None
        self.applied_fixes: dict[str, Any] = {}

    @property
    def bindings(self) -> PageBindings:
        """The working bindings, including any fixes applied during the run."""
        return self._bindings

    def _log(self, level: int, msg: str, *args: Any) -> None:
        logger.log(level, msg, *args)
        self._logs.append(msg % args if args else msg)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, recipe: c.Recipe) -> ExecutionResult:
        """Run *recipe* to completion, budget exhaustion or first unrecoverable error."""
        start = time.monotonic()
        self._ctx = ExecutionContext()
        self._stats = ExecutionStats()
        self._logs = []
        self._deadline = start + recipe.config.timeout if recipe.config.timeout else None
        self._max_items = recipe.config.max_items

        self._log(logging.INFO, "Executing recipe: %s", recipe.name)
        error: str | None = None

        try:
            for command in recipe.commands:
                if self._should_stop():
                    break
                outcome = await self._run(command)
                if outcome.success:
                    continue
                if self._ctx.timed_out:
                    error = outcome.error
                    break
                if await self._try_fix(command, outcome.error):
                    retry = await self._run(command)
                    if not retry.success:
                        error = f"Command failed after fix: {retry.error}"
                        break
                else:
                    error = outcome.error
                    break
        except DriverDisconnectedError as e:
            error = str(e) or "Driver disconnected"

        if error is None and self._ctx.timed_out:
            error = "Recipe timeout exceeded"

        self._stats.duration_sec = round(time.monotonic() - start, 3)
        if error:
            self._log(logging.ERROR, "Recipe execution failed: %s", error)
        else:
            self._log(
                logging.INFO,
                "Recipe %s finished: %d items in %.1fs",
                recipe.id,
                len(self._ctx.collected),
                self._stats.duration_sec,
            )
        return ExecutionResult(
            success=error is None,
            items=list(self._ctx.collected),
            stats=self._stats.model_copy(),
            error=error,
            logs=list(self._logs),
        )

    def _should_stop(self) -> bool:
        if self._stop_event is not None and self._stop_event.is_set():
            self._ctx.should_stop = True
        return self._ctx.should_stop

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _run(self, command: c.Command) -> _Outcome:
        """Execute one command; recoverable errors become a failed outcome."""
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._ctx.timed_out = True
            self._ctx.should_stop = True
            return _Outcome(False, "Recipe timeout exceeded")

        self._stats.commands_executed += 1
        logger.debug("Executing: %s", command.type)
        try:
            await self._dispatch(command)
            return _Outcome(True)
        except DriverDisconnectedError:
            raise
        except (SitewrightError, ValueError) as e:
            return _Outcome(False, str(e))

    async def _dispatch(self, command: c.Command) -> None:
        ctx = self._ctx
        b = self._bindings

        # Navigation
        if isinstance(command, c.OpenPage):
            if not await self._driver.navigate(command.url):
                raise SitewrightError(f"Failed to open page: {command.url}")
        elif isinstance(command, c.GoBack):
            if not await self._driver.go_back():
                raise SitewrightError("Failed to go back")

        # Waiting
        elif isinstance(command, c.WaitFor):
            await self._wait_for_target(command.target)
        elif isinstance(command, c.Wait):
            await asyncio.sleep(command.seconds)

        # Focus
        elif isinstance(command, c.GoTo):
            await self._go_to(command.name)
        elif isinstance(command, c.GoToFilter):
            flt = b.filters.get(command.name)
            if flt is None:
                raise SelectorResolutionError(f'Filter "{command.name}" not defined in bindings')
            await self._focus(flt.selector)
        elif isinstance(command, c.GoToItem):
            await self._go_to_item(command.which)

        # Actions
        elif isinstance(command, c.TypeText):
            selector = self._require_focus("TYPE")
            if not await self._driver.type_text(selector, command.text):
                raise SelectorResolutionError(f"Could not type into: {selector}", selector)
        elif isinstance(command, c.Submit):
            await self._driver.press_key("Enter")
        elif isinstance(command, c.Click):
            await self._click_current()
        elif isinstance(command, c.ClickIfExists):
            await self._click_if_exists(command.name)
        elif isinstance(command, c.Select):
            selector = self._require_focus("SELECT")
            if not await self._driver.select_option(selector, command.option):
                raise SelectorResolutionError(f"Could not select {command.option!r} in: {selector}", selector)
        elif isinstance(command, c.Clear):
            selector = self._require_focus("CLEAR")
            if not await self._driver.clear(selector):
                raise SelectorResolutionError(f"Could not clear: {selector}", selector)
        elif isinstance(command, c.SetChecked):
            selector = self._require_focus("SET_CHECKED")
            if not await self._driver.set_checked(selector, command.checked):
                raise SelectorResolutionError(f"Could not set checked state on: {selector}", selector)

        # Scrolling
        elif isinstance(command, c.Scroll):
            await self._scroll(command.direction, command.target)
        elif isinstance(command, c.ScrollIfNotEnd):
            if not await self._at_end(command.target):
                await self._scroll("down", command.target)

        # Data
        elif isinstance(command, c.ExtractDetails):
            await self._extract_details(command.selectors)
        elif isinstance(command, c.Save):
            self._save(command.as_)
        elif isinstance(command, c.MarkDone):
            if ctx.current_item is not None:
                ctx.processed_ids.add(ctx.current_item.id)
                self._stats.items_processed += 1

        # Flow control
        elif isinstance(command, c.ForEachItemInList):
            await self._for_each(command)
        elif isinstance(command, c.If):
            branch = command.then if await self._evaluate(command.condition) else command.else_
            for sub in branch:
                if self._should_stop():
                    break
                outcome = await self._run(sub)
                if not outcome.success:
                    raise SitewrightError(outcome.error)
        elif isinstance(command, c.CheckpointCount):
            ctx.checkpoint_item_count = await self._item_count()
            logger.debug("Checkpoint: item count = %d", ctx.checkpoint_item_count)
        elif isinstance(command, c.Repeat):
            await self._repeat(command)
        elif isinstance(command, c.End):
            ctx.should_stop = True
        else:
            raise SitewrightError(f"Unknown command type: {getattr(command, 'type', command)!r}")

    # ------------------------------------------------------------------
    # Conditions
    # ------------------------------------------------------------------

    async def _count(self, selector: str) -> int:
        return len(await self._driver.query(selector))

    async def _exists(self, selector: str) -> bool:
        return await self._count(selector) > 0

    async def _item_count(self) -> int:
        return await self._count(self._bindings.list_item)

    async def check_condition(self, condition: StateCondition) -> bool:
        """True when every populated field of *condition* holds right now."""
        if condition.exists and not await self._exists(condition.exists):
            return False
        if condition.visible:
            matches = await self._driver.query(condition.visible)
            if not any(m.visible for m in matches):
                return False
        if condition.gone and await self._exists(condition.gone):
            return False
        if condition.count_changed and await self._count(condition.count_changed) == self._ctx.checkpoint_item_count:
            return False
        if condition.count_at_least:
            if await self._count(condition.count_at_least.selector) < condition.count_at_least.count:
                return False
        if condition.url_contains or condition.url_matches:
            url = await self._driver.url()
            if condition.url_contains and condition.url_contains not in url:
                return False
            if condition.url_matches and not re.search(condition.url_matches, url):
                return False
        for child in condition.all_of or []:
            if not await self.check_condition(child):
                return False
        if condition.any_of:
            for child in condition.any_of:
                if await self.check_condition(child):
                    break
            else:
                return False
        return True

    async def wait_for_condition(self, condition: StateCondition, timeout: float | None = None) -> None:
        """Poll *condition* until it holds.

        Raises:
            ConditionTimeoutError: The condition never held within *timeout*.
        """
        timeout = self._settings.wait_timeout_sec if timeout is None else timeout
        described = condition.describe()
        logger.debug("Waiting for condition: %s", described)
        start = time.monotonic()
        while time.monotonic() - start < timeout:
            if await self.check_condition(condition):
                logger.debug("Condition met after %.0fms", (time.monotonic() - start) * 1000)
                return
            await asyncio.sleep(self._settings.poll_interval_sec)
        self._log(logging.WARNING, "Timeout waiting for %s after %.1fs", described, timeout)
        raise ConditionTimeoutError(described, timeout)

    async def _wait_loading_gone(self) -> None:
        loading = self._bindings.loading
        if loading is None:
            return
        start = time.monotonic()
        while time.monotonic() - start < self._settings.wait_timeout_sec:
            if not await self.check_condition(loading):
                return
            await asyncio.sleep(self._settings.poll_interval_sec)
        self._log(logging.WARNING, "Loading indicator still present after %.1fs", self._settings.wait_timeout_sec)

    async def _wait_for_target(self, target: str) -> None:
        b = self._bindings
        if target == "details" and b.click_behavior == ClickBehavior.INLINE:
            await asyncio.sleep(0.1)
            return

        await self._wait_loading_gone()
        if target == "page":
            await self.wait_for_condition(b.page_loaded or StateCondition(exists="body"))
        elif target == "list":
            await self.wait_for_condition(b.list_loaded or StateCondition(exists=b.list_item))
        elif target == "listUpdate":
            await self.wait_for_condition(b.list_updated or StateCondition(count_changed=b.list_item))
        elif target == "details":
            await self.wait_for_condition(b.details_loaded or StateCondition(exists=b.details_panel or "body"))
        else:
            raise SitewrightError(f"Unknown wait target: {target}")

    async def _evaluate(self, condition: Any) -> bool:
        """Evaluate an ``IF`` condition."""
        if isinstance(condition, c.ListEnd):
            return await self._at_end("list")
        if isinstance(condition, c.PageEnd):
            return await self._at_end("page")
        if isinstance(condition, c.NewItems):
            return await self._item_count() > self._ctx.checkpoint_item_count
        if isinstance(condition, c.Exists):
            selector = self.resolve_binding_name(condition.name)
            return bool(selector) and await self._exists(selector)
        if isinstance(condition, c.Visible):
            selector = self.resolve_binding_name(condition.name)
            if not selector:
                return False
            return any(m.visible for m in await self._driver.query(selector))
        if isinstance(condition, c.Not):
            return not await self._evaluate(condition.condition)
        if isinstance(condition, c.AllOf):
            for child in condition.conditions:
                if not await self._evaluate(child):
                    return False
            return True
        if isinstance(condition, c.AnyOf):
            for child in condition.conditions:
                if await self._evaluate(child):
                    return True
            return False
        raise SitewrightError(f"Unknown condition type: {getattr(condition, 'type', condition)!r}")

    def _until_met(self, condition: Any) -> bool:
        """Evaluate a ``REPEAT`` until-condition against run counters."""
        if isinstance(condition, c.Collected):
            return len(self._ctx.collected) >= condition.count
        if isinstance(condition, c.NoMoreItems):
            return self._ctx.no_new_items_count >= self._settings.no_new_items_threshold
        if isinstance(condition, c.MaxScrolls):
            return self._stats.scrolls_performed >= condition.count
        if isinstance(condition, c.UntilAnyOf):
            return any(self._until_met(child) for child in condition.conditions)
        if isinstance(condition, c.UntilAllOf):
            return all(self._until_met(child) for child in condition.conditions)
        raise SitewrightError(f"Unknown until condition: {getattr(condition, 'type', condition)!r}")

    # ------------------------------------------------------------------
    # Focus and clicks
    # ------------------------------------------------------------------

    def resolve_binding_name(self, name: str) -> str | None:
        """Map a built-in name or ``ELEMENTS`` key to a selector."""
        b = self._bindings
        builtin = {
            "nextPageButton": b.next_page_button,
            "loadMoreButton": b.load_more_button,
            "list": b.list_container,
            "listItem": b.list_item,
            "detailsPanel": b.details_panel,
            "searchBox": b.search_box,
            "closeDetailsButton": b.close_details_button,
        }
        if name in builtin:
            return builtin[name] or None
        return b.elements.get(name)

    async def _focus(self, selector: str) -> None:
        if not await self._exists(selector):
            raise SelectorResolutionError(f"Element not found: {selector}", selector)
        self._ctx.current_selector = selector

    async def _go_to(self, name: str) -> None:
        b = self._bindings
        if name == "searchBox":
            selector = b.search_box
            if not selector:
                raise SelectorResolutionError("SEARCH_BOX binding not defined")
        elif name == "list":
            selector = b.list_container
        elif name == "details":
            selector = b.details_panel
            if not selector:
                raise SelectorResolutionError("DETAILS_PANEL binding not defined")
        else:
            selector = b.elements.get(name)
            if not selector:
                raise SelectorResolutionError(f'Element "{name}" not defined in ELEMENTS bindings')
        await self._focus(selector)

    def _require_focus(self, command_type: str) -> str:
        if not self._ctx.current_selector:
            raise SelectorResolutionError(f"No element focused for {command_type}")
        return self._ctx.current_selector

    async def _click_item(self, item: _Item) -> None:
        if not await self._driver.click(self._bindings.list_item, item.index):
            raise SelectorResolutionError(
                f"Could not click item {item.id} at index {item.index}", self._bindings.list_item
            )

    async def _click_current(self) -> None:
        ctx = self._ctx
        if ctx.current_item is not None:
            if self._bindings.click_behavior == ClickBehavior.INLINE:
                logger.debug("Inline mode: skipping click, content is in item")
                return
            await self._click_item(ctx.current_item)
            return
        selector = self._require_focus("CLICK")
        if not await self._driver.click(selector):
            raise SelectorResolutionError(f"Could not click selector: {selector}", selector)

    async def _click_if_exists(self, name: str) -> None:
        selector = self.resolve_binding_name(name)
        if not selector:
            logger.debug('CLICK_IF_EXISTS: binding "%s" not defined, skipping', name)
            return
        if not await self._exists(selector):
            logger.debug('CLICK_IF_EXISTS: element "%s" not found, skipping', name)
            return
        if not await self._driver.click(selector):
            raise SelectorResolutionError(f"Could not click selector: {selector}", selector)
        logger.debug('CLICK_IF_EXISTS: clicked "%s"', name)

    # ------------------------------------------------------------------
    # Scrolling
    # ------------------------------------------------------------------

    async def _at_end(self, target: str) -> bool:
        b = self._bindings
        if target == "page":
            return await self._driver.at_scroll_end(None)
        if b.scroll_behavior == ScrollBehavior.STATIC:
            return True
        if b.scroll_behavior == ScrollBehavior.PAGINATED:
            return not (b.next_page_button and await self._exists(b.next_page_button))
        if b.scroll_behavior == ScrollBehavior.LOAD_MORE_BUTTON:
            return not (b.load_more_button and await self._exists(b.load_more_button))
        return await self._driver.at_scroll_end(b.scroll_container)

    async def _scroll(self, direction: str, target: str) -> None:
        """Reveal more content according to ``SCROLL_BEHAVIOR`` (list target, downwards)."""
        b = self._bindings
        moved: bool
        if target == "page" or direction == "up":
            container = b.scroll_container if target == "list" else None
            moved = await self._driver.scroll(direction, container)
        elif b.scroll_behavior == ScrollBehavior.STATIC:
            logger.debug("Static list: nothing to scroll")
            moved = False
        elif b.scroll_behavior == ScrollBehavior.LOAD_MORE_BUTTON:
            moved = bool(b.load_more_button) and await self._driver.click(b.load_more_button)
        elif b.scroll_behavior == ScrollBehavior.PAGINATED:
            moved = bool(b.next_page_button) and await self._driver.click(b.next_page_button)
        else:
            moved = await self._driver.scroll("down", b.scroll_container)
        if moved:
            self._stats.scrolls_performed += 1

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def _nested_id_matches(self) -> list[ElementInfo]:
        extractor = self._bindings.item_id
        if extractor is None or not extractor.selector:
            return []
        try:
            return await self._driver.query(f"{self._bindings.list_item} {extractor.selector}")
        except SelectorResolutionError as e:
            logger.debug("ITEM_ID selector unusable: %s", e)
            return []

    def item_id_for(
        self,
        info: ElementInfo,
        snapshot: Snapshot | None = None,
        nested: list[ElementInfo] | None = None,
    ) -> str:
        """Derive a stable id for one list item.

        Order: ``data-id``; the ``ITEM_ID`` rule (applied to the first
        nested ``ITEM_ID.selector`` match, else the item itself); the
        element identity hash.
        """
        attrs = info.attributes
        if attrs.get("data-id"):
            return attrs["data-id"]

        extractor = self._bindings.item_id
        if extractor is not None:
            prefix = info.xpath + "/"
            target = next((m for m in nested or [] if info.xpath and m.xpath.startswith(prefix)), None)
            target_attrs = target.attributes if target is not None else attrs

            raw: str | None = None
            if extractor.source == "href":
                raw = target_attrs.get("href") or attrs.get("href")
            elif extractor.source == "attribute" and extractor.attribute:
                raw = target_attrs.get(extractor.attribute) or attrs.get(extractor.attribute)
            elif extractor.source == "data":
                name = extractor.attribute or "data-id"
                raw = target_attrs.get(name) or next(
                    (v for k, v in target_attrs.items() if k.startswith("data-") and v), None
                )
            elif extractor.source == "text":
                raw = ((target.text if target is not None else info.text) or "").strip()

            if raw:
                if extractor.pattern:
                    try:
                        match = re.search(extractor.pattern, raw)
                    except re.error:
                        match = None
                    if match and match.groups() and match.group(1):
                        return match.group(1)
                return raw

        if snapshot is not None and info.xpath:
            node = snapshot.find_by_xpath(info.xpath)
            if node is not None:
                return identity(snapshot, node.id).value
        return identity_from_parts(info.tag_path, attrs, info.xpath).value

    async def _list_items(self) -> tuple[list[ElementInfo], Snapshot, list[ElementInfo]]:
        snapshot = await capture(self._driver)
        matches = await self._driver.query(self._bindings.list_item)
        return matches, snapshot, await self._nested_id_matches()

    async def _go_to_item(self, which: str) -> None:
        ctx = self._ctx
        if which == "current":
            if ctx.current_item is None:
                raise SitewrightError("No current item - navigate to an item first")
            return

        matches, snapshot, nested = await self._list_items()
        if not matches:
            raise SelectorResolutionError("No items found in list", self._bindings.list_item)

        if which == "first":
            candidates = [0]
        elif which == "next":
            candidates = [ctx.current_item_index + 1]
        else:
            candidates = list(range(len(matches)))

        for index in candidates:
            if index >= len(matches):
                break
            item_id = self.item_id_for(matches[index], snapshot, nested)
            if which == "unprocessed" and item_id in ctx.processed_ids:
                continue
            ctx.current_item = _Item(index, item_id, matches[index])
            ctx.current_item_index = index
            ctx.extracted_content = None
            return
        raise SitewrightError("No unprocessed items" if which == "unprocessed" else "No more items in list")

    async def _for_each(self, command: c.ForEachItemInList) -> None:
        ctx = self._ctx
        b = self._bindings
        visited: set[str] = set()
        announced = False

        while not self._should_stop():
            matches, snapshot, nested = await self._list_items()
            if not announced:
                self._log(logging.INFO, "FOR_EACH_ITEM_IN_LIST: found %d items", len(matches))
                announced = True
            if not matches:
                self._log(logging.WARNING, "No items found with selector: %s", b.list_item)
                return

            picked: _Item | None = None
            for index, info in enumerate(matches):
                item_id = self.item_id_for(info, snapshot, nested)
                if item_id in visited:
                    continue
                visited.add(item_id)
                if command.skip_processed and item_id in ctx.processed_ids:
                    logger.debug("Skipping already processed item: %s", item_id)
                    continue
                picked = _Item(index, item_id, info)
                break
            if picked is None:
                return

            ctx.current_item = picked
            ctx.current_item_index = picked.index
            ctx.extracted_content = None
            logger.debug("Processing item %d/%d: %s", picked.index + 1, len(matches), picked.id)

            opened = False
            try:
                await self._open_item(picked)
                opened = True
                for sub in command.body:
                    if self._should_stop():
                        break
                    outcome = await self._run(sub)
                    if not outcome.success:
                        self._log(logging.WARNING, "Command %s failed for item %s: %s", sub.type, picked.id, outcome.error)
                        break
            except DriverDisconnectedError:
                raise
            except SitewrightError as e:
                self._log(logging.WARNING, "Item %s abandoned: %s", picked.id, e)
            if opened:
                await self._return_to_list()

            if len(visited) % 5 == 0:
                self._log(logging.INFO, "Visited %d items, collected %d", len(visited), len(ctx.collected))

    async def _open_item(self, item: _Item) -> None:
        if self._bindings.click_behavior == ClickBehavior.INLINE:
            return
        await self._click_item(item)
        await self._wait_for_target("details")

    async def _return_to_list(self) -> None:
        b = self._bindings
        if b.click_behavior != ClickBehavior.NAVIGATES:
            return
        mode = b.return_to_list or ReturnToList.GO_BACK
        if mode == ReturnToList.GO_BACK:
            await self._driver.go_back()
        elif mode == ReturnToList.CLICK_CLOSE and b.close_details_button:
            await self._driver.click(b.close_details_button)
        try:
            await self._wait_for_target("list")
        except ConditionTimeoutError as e:
            self._log(logging.WARNING, "List did not reappear after returning: %s", e)

    async def _repeat(self, command: c.Repeat) -> None:
        ctx = self._ctx
        limit = self._settings.max_repeat_iterations
        iteration = 0

        while not self._should_stop() and iteration < limit:
            iteration += 1
            before = len(ctx.collected)
            logger.debug("REPEAT iteration %d: collected=%d processed=%d", iteration, before, len(ctx.processed_ids))

            for sub in command.body:
                if self._should_stop():
                    break
                outcome = await self._run(sub)
                if not outcome.success:
                    self._log(logging.WARNING, "REPEAT body command %s failed: %s", sub.type, outcome.error)

            if len(ctx.collected) > before:
                ctx.no_new_items_count = 0
            else:
                ctx.no_new_items_count += 1

            if self._until_met(command.until):
                self._log(logging.INFO, "REPEAT ended: until condition met after %d iterations", iteration)
                return
            if self._bindings.no_more_items is not None and await self.check_condition(self._bindings.no_more_items):
                self._log(logging.INFO, "REPEAT ended: no more items after %d iterations", iteration)
                return

        if iteration >= limit:
            self._log(logging.WARNING, "REPEAT hit max iterations (%d), collected=%d", limit, len(ctx.collected))

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def _read_text(self, selectors: list[str]) -> str:
        texts: list[str] = []
        for selector in selectors:
            for match in await self._driver.query(selector):
                if match.text and match.text.strip():
                    texts.append(match.text.strip())
        return "\n".join(texts)

    async def _extract_details(self, explicit: list[str] | None) -> None:
        ctx = self._ctx
        b = self._bindings
        content = ""

        inline_item = ctx.current_item is not None and b.click_behavior == ClickBehavior.INLINE
        if inline_item and not explicit:
            content = (ctx.current_item.info.text or "").strip()
        else:
            selectors = explicit or b.details_content or ([b.details_panel] if b.details_panel else [])
            retries = self._settings.details_retries
            for attempt in range(retries):
                if not selectors:
                    break
                content = (await self._read_text(selectors)).strip()
                if content:
                    logger.debug("Extracted %d chars from %s", len(content), selectors)
                    break
                if attempt < retries - 1:
                    logger.debug("No content on attempt %d, waiting before retry", attempt + 1)
                    await asyncio.sleep(self._settings.details_retry_delay_sec)

        if not content and ctx.current_item is not None:
            content = (ctx.current_item.info.text or "").strip()
            if content:
                logger.debug("Fallback: extracted from current item: %s...", content[:100])

        if not content:
            raise SelectorResolutionError("No content extracted")
        ctx.extracted_content = content

    def _save(self, kind: str) -> None:
        ctx = self._ctx
        if ctx.current_item is None or not ctx.extracted_content:
            raise SitewrightError("No current item or content to save")
        ctx.collected.append(ExtractedItem(id=ctx.current_item.id, content=ctx.extracted_content, kind=kind))
        logger.debug('Saved item as "%s": %s', kind, ctx.current_item.id)
        if self._max_items is not None and len(ctx.collected) >= self._max_items:
            self._log(logging.INFO, "Reached maxItems (%d)", self._max_items)
            ctx.should_stop = True

    # ------------------------------------------------------------------
    # Binding repair
    # ------------------------------------------------------------------

    @staticmethod
    def binding_for_command(command: c.Command) -> str | None:
        """The binding key a failing top-level command most likely depends on."""
        if isinstance(command, c.WaitFor):
            return _WAIT_TARGET_BINDINGS.get(command.target)
        if isinstance(command, c.GoTo):
            return _GO_TO_BINDINGS.get(command.name, f"ELEMENTS.{command.name}")
        if isinstance(command, c.ExtractDetails):
            return "DETAILS_CONTENT"
        if isinstance(command, c.ForEachItemInList):
            return "LIST_ITEM"
        return None

    async def _try_fix(self, command: c.Command, error: str) -> bool:
        if self._on_binding_error is None:
            return False
        key = self.binding_for_command(command)
        if key is None:
            return False

        try:
            snapshot = await capture(self._driver)
            dom_context = render_dom_context(snapshot, self._settings.fix_context_max_chars)
        except DriverDisconnectedError:
            raise
        except SitewrightError as e:
            logger.warning("Could not capture DOM context for fix: %s", e)
            dom_context = ""

        request = BindingFixRequest(
            command=command,
            binding=key,
            current_value=self._bindings.get_key(key),
            error=error,
            dom_context=dom_context,
        )
        self._log(logging.INFO, "Requesting fix for %s after %s failed: %s", key, command.type, error)
        try:
            fix = await self._on_binding_error(request)
        except DriverDisconnectedError:
            raise
        except Exception as e:
            self._log(logging.ERROR, "Fix request for %s failed: %s: %s", key, type(e).__name__, e)
            return False
        if not fix:
            return False

        try:
            self._bindings = merge_bindings(self._bindings, fix)
        except ValidationError as e:
            self._log(logging.WARNING, "Discarding malformed fix for %s: %s", key, e.error_count())
            return False
        self.applied_fixes.update(fix)
        self._stats.binding_fixes += 1
        self._log(logging.INFO, "Applied fix for %s: %s", key, fix)
        return True


async def execute(
    driver: PageDriver,
    bindings: PageBindings,
    recipe: c.Recipe,
    *,
    on_binding_error: BindingFixCallback | None = None,
    stop_event: asyncio.Event | None = None,
) -> ExecutionResult:
    """Convenience wrapper: build a ``RecipeExecutor`` and run *recipe* once."""
    executor = RecipeExecutor(driver, bindings, on_binding_error=on_binding_error, stop_event=stop_event)
    return await executor.execute(recipe)
