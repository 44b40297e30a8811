"""Unified CLI entry point for sitewright.

Config precedence: settings.default.toml -> settings.<env>.toml -> settings.local.toml
-> env vars (SITEWRIGHT_* with double underscores) -> CLI flags.
"""

from __future__ import annotations

import logging

import typer

from sitewright.cli.bindings_cmd import bindings_app
from sitewright.cli.recipe_cmd import recipe_app
from sitewright.cli.run_cmd import explore_command, run_command
from sitewright.cli.settings_cmd import settings_app

try:
    from importlib.metadata import version

    VERSION = version("sitewright")
except Exception:
    VERSION = "unknown"

APP_HELP = (
    "sitewright — adaptive extraction of listings from web pages. "
    "Runs declarative recipes against learned page bindings and repairs them when sites change. "
    "Config precedence: settings.default.toml -> settings.local.toml -> env vars (SITEWRIGHT_* with __) -> CLI flags."
)

app = typer.Typer(add_completion=True, help=APP_HELP)

app.command("run")(run_command)
app.command("explore")(explore_command)
app.add_typer(bindings_app, name="bindings")
app.add_typer(recipe_app, name="recipe")
app.add_typer(settings_app, name="settings")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Show help when no subcommand is provided."""
    if version:
        typer.echo(f"sitewright {VERSION}")
        raise typer.Exit()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


if __name__ == "__main__":
    app()
