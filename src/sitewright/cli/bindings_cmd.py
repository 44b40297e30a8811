"""CLI commands for the binding store.

Subcommands for listing, inspecting, validating and clearing learned
page bindings without running a browser.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

bindings_app = typer.Typer(help="Manage learned page bindings — list, show, validate, and clear.")
console = Console()


def _open_store(db_path: Optional[Path]):
    from sitewright.store import build_binding_store

    try:
        return build_binding_store(db_path)
    except Exception as e:
        console.print(f"[red]Cannot open binding store:[/red] {e}")
        raise typer.Exit(code=1) from None


# ---------------------------------------------------------------------------
# sitewright bindings list
# ---------------------------------------------------------------------------


@bindings_app.command("list")
def bindings_list(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON."),
    db_path: Optional[Path] = typer.Option(None, "--db", help="Override the SQLite database path."),
) -> None:
    """List every stored binding set."""
    from sitewright.recipe.bindings import binding_age_hours, is_fresh
    from sitewright.settings import get_settings

    store = _open_store(db_path)
    records = store.list_all()
    if not records:
        console.print("[dim]No bindings stored.[/dim]")
        return

    if json_output:
        console.print_json(json.dumps([b.to_json_dict() for b in records], indent=2))
        return

    freshness_hours = get_settings().bindings.freshness_hours
    table = Table(title="Page bindings")
    table.add_column("ID", style="cyan")
    table.add_column("URL pattern", max_width=40)
    table.add_column("Version", justify="right")
    table.add_column("Updated", style="dim")
    table.add_column("Age (h)", justify="right")
    table.add_column("Fresh", justify="center")

    for bindings in records:
        age = binding_age_hours(bindings)
        table.add_row(
            bindings.id,
            bindings.url_pattern,
            str(bindings.version),
            bindings.updated_at.isoformat(timespec="seconds") if bindings.updated_at else "",
            f"{age:.1f}" if age != float("inf") else "-",
            "[green]✓[/green]" if is_fresh(bindings, freshness_hours=freshness_hours) else "[red]✗[/red]",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# sitewright bindings show
# ---------------------------------------------------------------------------


@bindings_app.command("show")
def bindings_show(
    key: str = typer.Argument(..., help="Binding id, or a URL to look up by pattern."),
    db_path: Optional[Path] = typer.Option(None, "--db", help="Override the SQLite database path."),
) -> None:
    """Show one binding set as JSON."""
    store = _open_store(db_path)
    bindings = store.get(key) or store.load(key)
    if bindings is None:
        console.print(f"[red]No bindings for:[/red] {key}")
        raise typer.Exit(code=1)
    console.print_json(json.dumps(bindings.to_json_dict(), indent=2))


# ---------------------------------------------------------------------------
# sitewright bindings validate
# ---------------------------------------------------------------------------


@bindings_app.command("validate")
def bindings_validate(
    source: str = typer.Argument(..., help="Path to a bindings JSON file, or a stored binding id."),
    db_path: Optional[Path] = typer.Option(None, "--db", help="Override the SQLite database path."),
) -> None:
    """Check a binding set for structural problems."""
    from pydantic import ValidationError

    from sitewright.recipe.bindings import PageBindings, validate_bindings

    path = Path(source)
    if path.suffix == ".json":
        if not path.is_file():
            console.print(f"[red]File not found:[/red] {path}")
            raise typer.Exit(code=1)
        try:
            bindings = PageBindings.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            console.print(f"[red]✗[/red] {path.name}: {e}")
            raise typer.Exit(code=1) from None
    else:
        bindings = _open_store(db_path).get(source)
        if bindings is None:
            console.print(f"[red]No bindings with id:[/red] {source}")
            raise typer.Exit(code=1)

    report = validate_bindings(bindings)
    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")
    if not report.valid:
        for error in report.errors:
            console.print(f"[red]✗[/red] {error}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Bindings {bindings.id or source} are valid.")


# ---------------------------------------------------------------------------
# sitewright bindings clear
# ---------------------------------------------------------------------------


@bindings_app.command("clear")
def bindings_clear(
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Remove bindings matching this URL."),
    binding_id: Optional[str] = typer.Option(None, "--id", help="Remove the binding set with this id."),
    all_: bool = typer.Option(False, "--all", help="Remove every stored binding set."),
    db_path: Optional[Path] = typer.Option(None, "--db", help="Override the SQLite database path."),
) -> None:
    """Delete stored bindings so the next run rediscovers them."""
    if sum(bool(x) for x in (url, binding_id, all_)) != 1:
        console.print("[red]Specify exactly one of --url, --id or --all.[/red]")
        raise typer.Exit(code=2)

    store = _open_store(db_path)
    if binding_id:
        removed = 1 if store.delete(binding_id) else 0
    elif url:
        removed = store.clear_for_url(url)
    else:
        removed = store.clear_all()
    console.print(f"Removed {removed} binding set(s).")
