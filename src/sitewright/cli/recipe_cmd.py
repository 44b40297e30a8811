"""CLI commands for recipe management."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

recipe_app = typer.Typer(help="Manage recipes — list, show, and validate.")
console = Console()


def _get_recipe_dir() -> Path:
    """Return the resolved recipe directory from settings."""
    from sitewright.settings import get_settings

    return Path(get_settings().recipe.recipe_dir)


@recipe_app.command("list")
def recipe_list(
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON."),
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Override recipe directory."),
) -> None:
    """List built-in templates and recipe files."""
    from sitewright.recipe.loader import load_recipes_from_dir
    from sitewright.recipe.templates import TEMPLATES

    recipe_dir = directory or _get_recipe_dir()
    rows = [
        {
            "id": name,
            "source": "built-in",
            "commands": None,
            "description": (fn.__doc__ or "").strip().split("\n")[0],
        }
        for name, fn in TEMPLATES.items()
    ]
    for recipe in load_recipes_from_dir(recipe_dir):
        rows.append(
            {
                "id": recipe.id,
                "source": str(recipe_dir),
                "commands": len(recipe.commands),
                "description": recipe.description,
            }
        )

    if json_output:
        console.print_json(json.dumps(rows, indent=2))
        return

    table = Table(title="Recipes")
    table.add_column("ID", style="cyan")
    table.add_column("Source", style="dim", max_width=40)
    table.add_column("Commands", justify="right")
    table.add_column("Description", max_width=50)
    for row in rows:
        table.add_row(row["id"], row["source"], "" if row["commands"] is None else str(row["commands"]), row["description"])
    console.print(table)


@recipe_app.command("show")
def recipe_show(
    name: str = typer.Argument(..., help="Template name, recipe id in the recipe dir, or JSON file path."),
    url: str = typer.Option("https://example.com", "--url", help="URL substituted into the recipe."),
    query: Optional[str] = typer.Option(None, "--query", "-q", help="Search query for search recipes."),
    max_items: int = typer.Option(20, "--max-items", "-n", min=1, help="Item limit substituted into the recipe."),
) -> None:
    """Show a resolved recipe as JSON."""
    from sitewright.recipe.loader import get_recipe

    try:
        recipe = get_recipe(name, url, query=query, max_items=max_items)
    except (KeyError, ValueError) as e:
        console.print(f"[red]Cannot resolve recipe:[/red] {e}")
        raise typer.Exit(code=1) from None
    console.print_json(json.dumps(recipe.to_json_dict(), indent=2))


@recipe_app.command("validate")
def recipe_validate(
    path: Path = typer.Argument(..., help="Path to a recipe JSON file."),
) -> None:
    """Validate a recipe JSON file against the command schema."""
    from pydantic import ValidationError

    from sitewright.recipe.loader import load_recipe_from_file

    if not path.is_file():
        console.print(f"[red]File not found:[/red] {path}")
        raise typer.Exit(code=1)
    try:
        recipe = load_recipe_from_file(path, {"url": "https://example.com", "query": "test", "max_items": 20})
    except (json.JSONDecodeError, ValidationError) as e:
        console.print(f"[red]✗[/red] {path.name}: {e}")
        raise typer.Exit(code=1) from None
    console.print(f"[green]✓[/green] {recipe.id}: {len(recipe.commands)} command(s) — valid.")
