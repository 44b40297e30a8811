"""CLI commands for inspecting and validating sitewright settings."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

settings_app = typer.Typer(help="Inspect and validate sitewright configuration.")
console = Console()

SECTIONS = ("llm", "browser", "bindings", "recipe", "exploration")


@settings_app.command("show")
def show_settings(
    section: Optional[str] = typer.Argument(None, help=f"Only show one section: {', '.join(SECTIONS)}."),
) -> None:
    """Display the currently resolved settings."""
    from sitewright.settings import get_settings

    data = get_settings().model_dump(mode="json")
    if section is not None:
        if section not in SECTIONS:
            console.print(f"[red]Unknown section:[/red] {section} (choose from {', '.join(SECTIONS)})")
            raise typer.Exit(code=2)
        data = data[section]
    console.print_json(json.dumps(data, indent=2, default=str))


@settings_app.command("validate")
def validate_settings(
    check_llm: bool = typer.Option(False, "--check-llm", help="Also probe the configured model server."),
) -> None:
    """Validate settings and report anything that would stop a run."""
    from sitewright.settings import get_settings

    try:
        settings = get_settings()
    except Exception as e:
        console.print(f"[red]✗[/red] Settings validation failed: {e}")
        raise typer.Exit(code=1)

    console.print("[green]✓[/green] Settings are valid.")
    console.print(f"  Environment: {settings.env}")
    console.print(f"  LLM provider: {settings.llm.provider} ({settings.llm.model})")
    console.print(f"  Binding store: {settings.bindings.backend} ({settings.bindings.sqlite_path})")
    console.print(f"  Bindings fresh for: {settings.bindings.freshness_hours:g}h")

    problems: list[str] = []
    if settings.bindings.backend not in ("sqlite", "memory"):
        problems.append(f"bindings.backend must be sqlite or memory, got {settings.bindings.backend!r}")
    if not Path(settings.recipe.recipe_dir).is_dir():
        console.print(f"  [yellow]⚠[/yellow] Recipe dir missing: {settings.recipe.recipe_dir} (built-in recipes only)")
    else:
        console.print(f"  Recipe dir: {settings.recipe.recipe_dir}")

    if check_llm:
        from sitewright.llm.factory import create_llm_provider

        try:
            llm = create_llm_provider()
        except ValueError as e:
            problems.append(str(e))
        else:
            try:
                if llm.check_connectivity():
                    console.print(f"  [green]✓[/green] Model server reachable, {settings.llm.model} available")
                else:
                    problems.append(f"model {settings.llm.model!r} is not reachable or not pulled")
            finally:
                llm.close()

    for problem in problems:
        console.print(f"[red]✗[/red] {problem}")
    if problems:
        raise typer.Exit(code=1)
