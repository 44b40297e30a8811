"""Recipe runner — bindings, execution, repair and parsing in one call.

One ``run`` performs at most ``recipe.max_retries`` cycles:

1. Obtain bindings: fresh, valid cached bindings on the first cycle,
   otherwise discovery through the ``Navigator``.
   Requested search, sort or filter fragments are generated against the
   live page and spliced into the recipe.
2. Execute the recipe; the executor asks the navigator for targeted
   fixes when a binding-bearing command fails.
3. Parse the raw items with a ``ContentParser``.
4. Persist the (possibly repaired) bindings, only when execution
   succeeded.

A failed cycle is retried with forced rediscovery only when it produced
no items and its error looks like a stale binding.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Optional, Protocol, runtime_checkable
from urllib.parse import urljoin

from pydantic import BaseModel, Field, ValidationError

from sitewright.dom.render import render_dom_context
from sitewright.dom.snapshot import capture
from sitewright.driver.base import PageDriver
from sitewright.exceptions import (
    BindingInvalidError,
    DriverDisconnectedError,
    MaxRetriesExceededError,
    ModelInvocationError,
    SitewrightError,
)
from sitewright.llm.base import LLMProvider
from sitewright.llm.structured import invoke_structured
from sitewright.recipe.bindings import PageBindings, binding_age_hours, is_fresh, merge_bindings, validate_bindings
from sitewright.recipe.commands import OpenPage, Recipe
from sitewright.recipe.executor import BindingFixRequest, ExecutionResult, ExtractedItem, RecipeExecutor
from sitewright.recipe.generator import FragmentGenerator, FragmentRequest, apply_fragments, merge_fragment_fixes
from sitewright.recipe.navigator import Navigator
from sitewright.store.binding_store import BindingStore

if TYPE_CHECKING:
    from sitewright.explorer.orchestrator import ExplorationResult

logger = logging.getLogger(__name__)

# Lower-cased substrings that mark an error as a probable stale binding.
BINDING_ERROR_PATTERNS = (
    "timeout",
    "waiting for",
    "not found",
    "no element",
    "selector",
    "cannot find",
    "does not exist",
    "null",
    "nonetype",
)


def is_binding_error(error: str | None) -> bool:
    """True when *error* reads like a selector or wait-condition failure."""
    if not error:
        return False
    lowered = error.lower()
    return any(pattern in lowered for pattern in BINDING_ERROR_PATTERNS)


# ---------------------------------------------------------------------------
# Content parsing
# ---------------------------------------------------------------------------


class ListingRecord(BaseModel):
    """Structured fields of one listing entry."""

    title: str = Field(description="Main heading of the entry")
    subtitle: Optional[str] = Field(default=None, description="Company, seller, author or similar")
    location: Optional[str] = Field(default=None, description='Location or "Remote"')
    price: Optional[str] = Field(default=None, description="Price or salary if shown")
    category: Optional[str] = Field(default=None, description="Type or category, e.g. Full-time")
    posted: Optional[str] = Field(default=None, description='When posted, e.g. "2 days ago"')
    description: Optional[str] = Field(default=None, description="First 500 characters of the description")


PARSER_SYSTEM_PROMPT = """\
Extract the details of one listing entry (job, product, article or similar) from its \
visible text. Fill only fields present in the text; leave the rest null. \
Answer by calling the report_listing tool."""

PARSER_USER_TEMPLATE = """\
Extract the entry from this text:
---
{content}
---"""


@runtime_checkable
class ContentParser(Protocol):
    """Turns one item's raw text into structured fields."""

    def parse(self, content: str) -> dict[str, Any]: ...


class LLMContentParser:
    """``ContentParser`` backed by a (cheap) language model.

    Args:
        llm: Provider to use; typically ``create_llm_provider(role="cheap")``.
        max_chars: Raw content beyond this many characters is not sent.
    """

    def __init__(self, llm: LLMProvider, *, max_chars: int = 3000) -> None:
        self._llm = llm
        self._max_chars = max_chars

    def parse(self, content: str) -> dict[str, Any]:
        """Raises ``ModelInvocationError`` when the model gives no usable record."""
        record = invoke_structured(
            self._llm,
            system=PARSER_SYSTEM_PROMPT,
            prompt=PARSER_USER_TEMPLATE.format(content=content[: self._max_chars]),
            schema=ListingRecord,
            tool_name="report_listing",
        )
        return record.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ParsedItem(BaseModel):
    id: str
    url: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)
    raw_content: str = ""
    extracted_at: datetime


class RunnerStats(BaseModel):
    attempts: int = 0
    binding_fixes: int = 0
    discovered: bool = False
    fragments_applied: int = 0
    commands_executed: int = 0
    items_processed: int = 0
    scrolls_performed: int = 0
    duration_sec: float = 0.0


class RunnerResult(BaseModel):
    """Terminal artifact of one ``RecipeRunner.run`` call."""

    success: bool
    items: list[ParsedItem] = Field(default_factory=list)
    raw_items: list[ExtractedItem] = Field(default_factory=list)
    bindings: Optional[PageBindings] = None
    error: Optional[str] = None
    stats: RunnerStats = Field(default_factory=RunnerStats)
    logs: list[str] = Field(default_factory=list)


def item_url(item_id: str, source_url: str) -> str | None:
    """Best-effort link for an item: absolute ids as-is, paths joined to *source_url*."""
    if item_id.startswith(("http://", "https://")):
        return item_id
    if item_id.startswith("/") and source_url:
        return urljoin(source_url, item_id)
    return None


def exploration_hints(exploration: "ExplorationResult | None") -> str | None:
    """Condense an exploration result into discovery hints."""
    if exploration is None:
        return None
    lines: list[str] = []
    if exploration.final_understanding:
        lines.append(exploration.final_understanding.strip())
    for role, selectors in (exploration.key_elements or {}).items():
        if selectors:
            lines.append(f"- {role}: {', '.join(selectors)}")
    return "\n".join(lines) or None


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class RecipeRunner:
    """Runs recipes with cached or discovered bindings and self-healing.

    Args:
        navigator: Discovers and repairs bindings.
        store: Binding persistence.
        parser: Content parser for raw items; ``None`` skips parsing.
        generator: Builds search, sort and filter fragments for runs
            that ask for refinements.
        settings: Root settings; defaults to ``get_settings()``.
    """

    def __init__(
        self,
        navigator: Navigator,
        store: BindingStore,
        parser: ContentParser | None = None,
        *,
        generator: FragmentGenerator | None = None,
        settings: Any = None,
    ) -> None:
        if settings is None:
            from sitewright.settings import get_settings

            settings = get_settings()
        self._navigator = navigator
        self._store = store
        self._parser = parser
        self._generator = generator
        self._settings = settings
        self._logs: list[str] = []
        self._stats = RunnerStats()
        self._bindings: PageBindings | None = None
        self._partial: list[ExtractedItem] = []

    @property
    def bindings(self) -> PageBindings | None:
        return self._bindings

    def _log(self, level: int, msg: str, *args: Any) -> None:
        logger.log(level, msg, *args)
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        self._logs.append(f"[{stamp}] " + (msg % args if args else msg))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        driver: PageDriver,
        recipe: Recipe,
        url: str | None = None,
        exploration: "ExplorationResult | None" = None,
        *,
        stop_event: asyncio.Event | None = None,
        refinements: Sequence[FragmentRequest] = (),
    ) -> RunnerResult:
        """Run *recipe*, retrying once with fresh bindings on binding errors.

        *refinements* (search, sort or filter requests) are turned into
        command fragments against the live page once bindings are known
        and spliced into the recipe before the list is processed.
        """
        start = time.monotonic()
        self._logs = []
        self._stats = RunnerStats()
        self._bindings = None
        self._partial = []
        max_retries = max(1, self._settings.recipe.max_retries)
        hints = exploration_hints(exploration)

        self._log(logging.INFO, "Starting recipe: %s (%s)", recipe.name, recipe.id)

        try:
            await self._open_start_page(driver, recipe, url)
        except SitewrightError as e:
            return self._error_result(str(e), start)
        except Exception as e:
            logger.exception("Failed to open start page: %s", e)
            return self._error_result(f"exception: {e}", start)

        last_error = ""
        for attempt in range(1, max_retries + 1):
            self._stats.attempts = attempt
            force = attempt > 1
            try:
                result = await self._cycle(driver, recipe, force, hints, stop_event, refinements)
            except DriverDisconnectedError as e:
                return self._error_result(str(e) or "Driver disconnected", start)
            except SitewrightError as e:
                last_error = str(e)
                self._log(logging.ERROR, "Attempt %d raised: %s", attempt, last_error)
                if is_binding_error(last_error) and attempt < max_retries:
                    self._log(logging.INFO, "Retrying with fresh binding discovery")
                    continue
                return self._error_result(last_error, start)
            except Exception as e:
                logger.exception("Recipe run failed unexpectedly: %s", e)
                return self._error_result(f"exception: {e}", start)

            if result.success or result.raw_items:
                return self._finish(result, start)
            last_error = result.error or ""
            if is_binding_error(last_error) and attempt < max_retries:
                self._log(logging.WARNING, "Attempt %d failed with binding error: %s", attempt, last_error)
                self._log(logging.INFO, "Retrying with fresh binding discovery")
                continue
            return self._finish(result, start)

        return self._error_result(str(MaxRetriesExceededError(max_retries, last_error)), start)

    async def _open_start_page(self, driver: PageDriver, recipe: Recipe, url: str | None) -> None:
        # Discovery needs the target page loaded before the recipe re-opens it
        if url is None:
            first = recipe.commands[0] if recipe.commands else None
            if isinstance(first, OpenPage) and "{" not in first.url and await driver.url() != first.url:
                url = first.url
        if url is None:
            return
        self._log(logging.INFO, "Opening %s", url)
        if not await driver.navigate(url):
            raise SitewrightError(f"Failed to open page: {url}")

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def _cycle(
        self,
        driver: PageDriver,
        recipe: Recipe,
        force_rediscover: bool,
        hints: str | None,
        stop_event: asyncio.Event | None,
        refinements: Sequence[FragmentRequest] = (),
    ) -> RunnerResult:
        bindings = await self._bindings_for_page(driver, force_rediscover, hints)
        if bindings is None:
            return RunnerResult(success=False, error="Failed to get page bindings")
        if refinements:
            recipe, bindings = await self._refine(driver, recipe, bindings, refinements, hints)
        self._bindings = bindings

        executor = RecipeExecutor(
            driver,
            bindings,
            on_binding_error=self._handle_binding_error,
            settings=self._settings.recipe,
            stop_event=stop_event,
        )
        execution = await executor.execute(recipe)
        self._partial = execution.items
        self._logs.extend(execution.logs)
        self._bindings = executor.bindings
        self._absorb_stats(execution)

        source_url = await driver.url()
        parsed, parse_errors = await self._parse_items(execution.items, source_url)

        if execution.success:
            try:
                self._bindings = self._store.save(executor.bindings)
            except BindingInvalidError as e:
                self._log(logging.WARNING, "Bindings not persisted: %s", e)

        error = execution.error
        if execution.success and parse_errors:
            error = f"Failed to parse {parse_errors} of {len(execution.items)} item(s)"

        self._log(logging.INFO, "Execution complete: %d items extracted, %d parsed", len(execution.items), len(parsed))
        return RunnerResult(
            success=execution.success and not parse_errors,
            items=parsed,
            raw_items=execution.items,
            bindings=self._bindings,
            error=error,
        )

    def _absorb_stats(self, execution: ExecutionResult) -> None:
        self._stats.commands_executed += execution.stats.commands_executed
        self._stats.items_processed += execution.stats.items_processed
        self._stats.scrolls_performed += execution.stats.scrolls_performed

    async def _bindings_for_page(
        self,
        driver: PageDriver,
        force_rediscover: bool,
        hints: str | None,
    ) -> PageBindings | None:
        url = await driver.url()
        freshness_hours = self._settings.bindings.freshness_hours

        if not force_rediscover:
            existing = self._store.load(url)
            if existing is not None:
                if is_fresh(existing, freshness_hours=freshness_hours):
                    self._log(
                        logging.INFO,
                        "Using saved bindings %s (%.0f min old)",
                        existing.id,
                        binding_age_hours(existing) * 60,
                    )
                    self._stats.discovered = False
                    return existing
                report = validate_bindings(existing)
                if not report.valid:
                    self._log(logging.WARNING, "Saved bindings invalid, rediscovering: %s", report.errors)
                else:
                    self._log(logging.INFO, "Saved bindings too old, rediscovering")

        self._log(logging.INFO, "Discovering bindings for %s%s", url, " (forced)" if force_rediscover else "")
        snapshot = await capture(driver)
        recipe_settings = self._settings.recipe
        dom_context = render_dom_context(snapshot, recipe_settings.dom_context_max_chars)
        self._log(logging.INFO, "DOM context: %d chars", len(dom_context))
        if len(dom_context) < recipe_settings.dom_context_min_chars:
            self._log(logging.ERROR, "DOM context is empty or too small - page may not be loaded")
            return None

        discovery = await asyncio.to_thread(
            self._navigator.discover_bindings, dom_context, url, hints, title=snapshot.title
        )
        if not discovery.success or discovery.bindings is None:
            self._log(logging.ERROR, "Binding discovery failed: %s", discovery.error)
            return None

        bindings = discovery.bindings
        report = validate_bindings(bindings)
        if report.errors:
            self._log(logging.WARNING, "Binding validation errors: %s", ", ".join(report.errors))
        if report.warnings:
            self._log(logging.INFO, "Binding warnings: %s", ", ".join(report.warnings))
        self._log(logging.INFO, 'Bindings ready: %s LIST="%s" LIST_ITEM="%s"', bindings.id, bindings.list_container, bindings.list_item)
        self._stats.discovered = True
        return bindings

    async def _refine(
        self,
        driver: PageDriver,
        recipe: Recipe,
        bindings: PageBindings,
        requests: Sequence[FragmentRequest],
        hints: str | None,
    ) -> tuple[Recipe, PageBindings]:
        if self._generator is None:
            self._log(logging.WARNING, "No fragment generator configured, ignoring %d refinement(s)", len(requests))
            return recipe, bindings

        snapshot = await capture(driver)
        dom_context = render_dom_context(snapshot, self._settings.recipe.dom_context_max_chars)
        url = await driver.url()
        fragments = []
        for request in requests:
            result = await asyncio.to_thread(
                self._generator.generate, request, dom_context, url, title=snapshot.title, hints=hints
            )
            if result.success and result.fragment is not None:
                fragments.append(result.fragment)
            else:
                self._log(logging.WARNING, "Skipping %s %r: %s", request.kind, request.value, result.error)
        if not fragments:
            return recipe, bindings

        try:
            bindings = merge_bindings(bindings, merge_fragment_fixes(fragments))
        except ValidationError as e:
            self._log(logging.WARNING, "Fragment bindings rejected: %d error(s)", e.error_count())
            return recipe, bindings

        self._stats.fragments_applied += len(fragments)
        self._log(logging.INFO, "Applied fragment(s): %s", ", ".join(f"{f.kind} {f.name}" for f in fragments))
        return apply_fragments(recipe, fragments), bindings

    async def _handle_binding_error(self, request: BindingFixRequest) -> dict[str, Any] | None:
        self._stats.binding_fixes += 1
        self._log(logging.INFO, "Fixing binding %s: %s", request.binding, request.error)
        result = await asyncio.to_thread(self._navigator.fix_binding, request)
        if result.success and result.fixes:
            return result.fixes
        self._log(logging.WARNING, "No fix for %s: %s", request.binding, result.error)
        return None

    async def _parse_items(self, items: list[ExtractedItem], source_url: str) -> tuple[list[ParsedItem], int]:
        parsed: list[ParsedItem] = []
        failures = 0
        for item in items:
            data: dict[str, Any] = {}
            if self._parser is not None:
                try:
                    data = await asyncio.to_thread(self._parser.parse, item.content)
                except ModelInvocationError as e:
                    failures += 1
                    self._log(logging.WARNING, "Failed to parse item %s: %s", item.id, e)
                    continue
            parsed.append(
                ParsedItem(
                    id=item.id,
                    url=item_url(item.id, source_url),
                    data=data,
                    raw_content=item.content[:500],
                    extracted_at=item.extracted_at,
                )
            )
        return parsed, failures

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _finish(self, result: RunnerResult, start: float) -> RunnerResult:
        self._stats.duration_sec = round(time.monotonic() - start, 3)
        result.stats = self._stats.model_copy()
        result.logs = list(self._logs)
        if result.bindings is None:
            result.bindings = self._bindings
        return result

    def _error_result(self, error: str, start: float) -> RunnerResult:
        # Items collected before the failure are kept unparsed
        self._log(logging.ERROR, "Recipe run failed: %s", error)
        return self._finish(RunnerResult(success=False, error=error, raw_items=list(self._partial)), start)
