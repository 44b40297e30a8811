"""CLI commands that drive a browser: ``run`` and ``explore``."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

if TYPE_CHECKING:
    from sitewright.explorer.orchestrator import ExplorationResult
    from sitewright.recipe.generator import FragmentRequest
    from sitewright.recipe.runner import RunnerResult

console = Console()

DEFAULT_TASK = "Learn how to browse the listings on this page, open each one, and load more results."


def _write_output(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
    console.print(f"  Output saved to: {path}")


def refinement_requests(sort: Optional[str], filters: Optional[list[str]]) -> list["FragmentRequest"]:
    """Fragment requests for the --sort and --filter options, sort first."""
    from sitewright.recipe.generator import FragmentRequest

    requests = [FragmentRequest("sort", sort)] if sort else []
    requests.extend(FragmentRequest("filter", value) for value in filters or () if value.strip())
    return requests


# ---------------------------------------------------------------------------
# Async bodies
# ---------------------------------------------------------------------------


async def _explore(url: str, task: str, max_steps: Optional[int]) -> "ExplorationResult":
    from sitewright.driver.zen_driver import ZenDriver
    from sitewright.explorer.orchestrator import ExplorationOrchestrator
    from sitewright.llm.factory import create_llm_provider
    from sitewright.settings import get_settings

    settings = get_settings()
    exploration_settings = settings.exploration
    if max_steps is not None:
        exploration_settings = exploration_settings.model_copy(update={"max_steps": max_steps})

    llm = create_llm_provider()
    try:
        async with ZenDriver() as driver:
            await driver.navigate(url)
            orchestrator = ExplorationOrchestrator(
                driver,
                llm,
                settings=exploration_settings,
                settle_delay_sec=settings.browser.settle_delay_sec,
            )
            return await orchestrator.explore(task)
    finally:
        llm.close()


async def _run(
    url: str,
    recipe_name: str,
    query: Optional[str],
    max_items: int,
    explore_first: bool,
    task: str,
    parse: bool,
    refinements: list["FragmentRequest"],
) -> "RunnerResult":
    from sitewright.driver.zen_driver import ZenDriver
    from sitewright.explorer.orchestrator import ExplorationOrchestrator
    from sitewright.llm.factory import create_llm_provider
    from sitewright.recipe.loader import get_recipe
    from sitewright.recipe.generator import FragmentGenerator
    from sitewright.recipe.navigator import Navigator
    from sitewright.recipe.runner import LLMContentParser, RecipeRunner
    from sitewright.settings import get_settings
    from sitewright.store import build_binding_store

    settings = get_settings()
    recipe = get_recipe(recipe_name, url, query=query, max_items=max_items)
    llm = create_llm_provider()
    cheap_llm = create_llm_provider(role="cheap") if parse else None

    navigator = Navigator(
        llm,
        fix_context_max_chars=settings.recipe.fix_context_max_chars,
        dom_context_max_chars=settings.recipe.dom_context_max_chars,
    )
    runner = RecipeRunner(
        navigator,
        build_binding_store(),
        LLMContentParser(cheap_llm) if cheap_llm is not None else None,
        settings=settings,
        generator=FragmentGenerator(llm, dom_context_max_chars=settings.recipe.dom_context_max_chars) if refinements else None,
    )

    try:
        async with ZenDriver() as driver:
            exploration = None
            if explore_first:
                await driver.navigate(url)
                orchestrator = ExplorationOrchestrator(
                    driver,
                    llm,
                    settings=settings.exploration,
                    settle_delay_sec=settings.browser.settle_delay_sec,
                )
                exploration = await orchestrator.explore(task)
            return await runner.run(driver, recipe, url, exploration, refinements=refinements)
    finally:
        llm.close()
        if cheap_llm is not None:
            cheap_llm.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def run_command(
    url: str = typer.Argument(..., help="Listing page to extract from."),
    recipe: str = typer.Option("listing_extraction", "--recipe", "-r", help="Template name, recipe id or JSON path."),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search query for search recipes."),
    max_items: int = typer.Option(20, "--max-items", "-n", min=1, help="Stop after this many items."),
    explore_first: bool = typer.Option(False, "--explore", help="Explore the page first and use the findings as hints."),
    task: str = typer.Option(DEFAULT_TASK, "--task", help="Exploration task (with --explore)."),
    parse: bool = typer.Option(True, "--parse/--no-parse", help="Parse raw items into structured fields."),
    sort: Optional[str] = typer.Option(None, "--sort", help="Sort the list first, e.g. \"Most recent\"."),
    filters: Optional[list[str]] = typer.Option(None, "--filter", help="Apply a filter first, e.g. \"Remote\"; repeatable."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the full result as JSON."),
) -> None:
    """Run a recipe against a URL, discovering or repairing bindings as needed."""
    console.print(Panel(f"[bold]Extracting:[/bold] {url}\n[dim]recipe: {recipe}[/dim]", title="sitewright", border_style="blue"))

    try:
        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
            progress_task = progress.add_task("Running recipe...", total=None)
            refinements = refinement_requests(sort, filters)
            result = asyncio.run(_run(url, recipe, query, max_items, explore_first, task, parse, refinements))
            progress.update(progress_task, completed=True)
    except (KeyError, ValueError) as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1) from None

    if output:
        _write_output(output, result.model_dump(mode="json", by_alias=True))

    if result.items:
        table = Table(title=f"Items ({len(result.items)})")
        table.add_column("ID", style="cyan", max_width=30)
        table.add_column("Title", max_width=50)
        table.add_column("Details", style="dim", max_width=50)
        for item in result.items:
            data = dict(item.data)
            title = str(data.pop("title", ""))
            table.add_row(item.id, title, ", ".join(f"{k}={v}" for k, v in data.items() if k != "description"))
        console.print(table)

    stats = result.stats
    console.print(
        f"  attempts={stats.attempts} fixes={stats.binding_fixes} discovered={stats.discovered} "
        f"fragments={stats.fragments_applied} commands={stats.commands_executed} items={stats.items_processed} "
        f"({stats.duration_sec:.1f}s)"
    )
    if result.success:
        console.print(f"\n[green]✓[/green] Extracted {len(result.items) or len(result.raw_items)} item(s)")
    else:
        console.print(f"\n[red]✗[/red] Run failed: {result.error}")
        raise typer.Exit(code=1)


def explore_command(
    url: str = typer.Argument(..., help="Page to explore."),
    task: str = typer.Option(DEFAULT_TASK, "--task", "-t", help="What the exploration should learn."),
    max_steps: Optional[int] = typer.Option(None, "--max-steps", min=1, help="Override exploration.max_steps."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the full result as JSON."),
) -> None:
    """Explore a page and report the learned pages, behaviours and key elements."""
    console.print(Panel(f"[bold]Exploring:[/bold] {url}", title="sitewright", border_style="blue"))

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
        progress_task = progress.add_task("Exploring...", total=None)
        result = asyncio.run(_explore(url, task, max_steps))
        progress.update(progress_task, completed=True)

    if output:
        _write_output(output, result.model_dump(mode="json"))

    console.print(f"\n[bold]Pages:[/bold] {' -> '.join(result.navigation_path)}")
    for role, selectors in result.key_elements.items():
        console.print(f"  {role}: {', '.join(selectors)}")
    if result.final_understanding:
        console.print(Panel(result.final_understanding, title="Understanding", border_style="green" if result.success else "yellow"))

    if result.success:
        console.print(f"\n[green]✓[/green] Exploration complete in {len(result.steps)} step(s)")
    else:
        console.print(f"\n[red]✗[/red] Exploration incomplete: {result.error}")
        raise typer.Exit(code=1)
