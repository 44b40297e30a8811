"""Recipe loader — built-in templates and JSON recipes from disk.

Recipe JSON files live in a configurable directory (default:
``config/recipes/``). Each ``.json`` file contains a single recipe
conforming to the ``Recipe`` schema.  String values may contain
``{url}``, ``{query}`` and ``{max_items}`` placeholders, resolved when
the recipe is loaded for a run.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from sitewright.recipe.commands import Recipe
from sitewright.recipe.templates import TEMPLATES

logger = logging.getLogger(__name__)

# Regex for template variables: {url}, {query}, {max_items}
_TEMPLATE_RE = re.compile(r"\{(\w+)\}")


def resolve_template(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{name}`` placeholders found in *variables*; others are left as-is."""
    if "{" not in template:
        return template

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        logger.warning("Unresolved template variable: %s", key)
        return match.group(0)

    return _TEMPLATE_RE.sub(_replace, template)


def _resolve(data: Any, variables: dict[str, Any]) -> Any:
    if isinstance(data, str):
        return resolve_template(data, variables)
    if isinstance(data, list):
        return [_resolve(item, variables) for item in data]
    if isinstance(data, dict):
        return {key: _resolve(value, variables) for key, value in data.items()}
    return data


def load_recipe_from_file(path: Path, variables: dict[str, Any] | None = None) -> Recipe:
    """Load a single recipe from a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        pydantic.ValidationError: If the data does not conform to the schema.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if variables:
        data = _resolve(data, variables)
    return Recipe.model_validate(data)


def load_recipes_from_dir(
    directory: Path | str,
    variables: dict[str, Any] | None = None,
) -> list[Recipe]:
    """Load all recipe JSON files from a directory.

    Placeholders are resolved against *variables*; by default only
    ``max_items`` (20) is filled in so numeric fields validate and
    ``{url}`` stays literal.  Files that fail validation are logged and
    skipped rather than aborting the entire load.
    """
    variables = variables or {"max_items": 20}
    dir_path = Path(directory)
    if not dir_path.is_dir():
        logger.warning("Recipe directory does not exist: %s", dir_path)
        return []

    recipes: list[Recipe] = []
    for json_file in sorted(dir_path.glob("*.json")):
        try:
            recipe = load_recipe_from_file(json_file, variables)
            recipes.append(recipe)
            logger.info("Loaded recipe %s from %s", recipe.id, json_file.name)
        except Exception:
            logger.exception("Failed to load recipe from %s", json_file)
    return recipes


def get_recipe(
    name: str,
    url: str,
    *,
    query: str | None = None,
    max_items: int = 20,
    recipe_dir: Path | str | None = None,
) -> Recipe:
    """Resolve *name* to a runnable recipe.

    Built-in templates win; otherwise ``<recipe_dir>/<name>.json`` is
    loaded with ``url``/``query``/``max_items`` substituted.  A path to a
    JSON file is also accepted.

    Raises:
        KeyError: No template or recipe file with that name exists.
    """
    if name in TEMPLATES:
        if name == "listing_with_search":
            if not query:
                raise ValueError("listing_with_search requires a query")
            return TEMPLATES[name](url, query, max_items)
        return TEMPLATES[name](url, max_items)

    variables = {"url": url, "query": query, "max_items": max_items}
    candidate = Path(name)
    if candidate.suffix == ".json" and candidate.is_file():
        return load_recipe_from_file(candidate, variables)

    if recipe_dir is None:
        from sitewright.settings import get_settings

        recipe_dir = get_settings().recipe.recipe_dir
    path = Path(recipe_dir) / f"{name}.json"
    if not path.is_file():
        raise KeyError(f"Unknown recipe: {name!r}")
    return load_recipe_from_file(path, variables)
