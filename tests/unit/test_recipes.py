"""Unit tests for recipe commands, templates and the recipe loader."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from sitewright.recipe import commands as c
from sitewright.recipe.loader import get_recipe, load_recipe_from_file, load_recipes_from_dir, resolve_template
from sitewright.recipe.templates import TEMPLATES

RECIPES_DIR = Path(__file__).resolve().parents[2] / "config" / "recipes"

RECIPE_JSON = {
    "id": "jobs",
    "name": "Jobs",
    "commands": [
        {"type": "OPEN_PAGE", "url": "https://jobs.example.com"},
        {"type": "WAIT_FOR", "target": "list"},
        {
            "type": "FOR_EACH_ITEM_IN_LIST",
            "skipProcessed": False,
            "body": [
                {"type": "EXTRACT_DETAILS"},
                {"type": "SAVE", "as": "job"},
                {"type": "MARK_DONE"},
            ],
        },
        {
            "type": "IF",
            "condition": {"type": "NOT", "condition": {"type": "EXISTS", "name": "nextPageButton"}},
            "then": [{"type": "END"}],
            "else": [{"type": "CLICK_IF_EXISTS", "name": "nextPageButton"}],
        },
        {
            "type": "REPEAT",
            "body": [{"type": "SCROLL", "direction": "down"}],
            "until": {"type": "OR", "conditions": [{"type": "MAX_SCROLLS", "count": 3}, {"type": "NO_MORE_ITEMS"}]},
        },
    ],
    "config": {"maxItems": 10, "timeout": 60},
}


class TestCommands:
    """Test the tagged command union."""

    def test_parse_nested(self):
        recipe = c.Recipe.model_validate(RECIPE_JSON)
        for_each = recipe.commands[2]
        assert isinstance(for_each, c.ForEachItemInList)
        assert for_each.skip_processed is False
        assert isinstance(for_each.body[1], c.Save)
        assert for_each.body[1].as_ == "job"
        branch = recipe.commands[3]
        assert isinstance(branch.condition, c.Not)
        assert isinstance(branch.condition.condition, c.Exists)
        assert isinstance(branch.else_[0], c.ClickIfExists)
        assert isinstance(recipe.commands[4].until, c.UntilAnyOf)
        assert recipe.config.max_items == 10

    def test_json_round_trip(self):
        recipe = c.Recipe.model_validate(RECIPE_JSON)
        data = recipe.to_json_dict()
        assert data["commands"][2]["skipProcessed"] is False
        assert data["commands"][2]["body"][1]["as"] == "job"
        assert data["commands"][3]["else"][0]["name"] == "nextPageButton"
        assert data["config"]["maxItems"] == 10
        assert c.Recipe.model_validate(json.loads(json.dumps(data))) == recipe

    def test_unknown_command_rejected(self):
        with pytest.raises(ValidationError):
            c.command_adapter.validate_python({"type": "EXECUTE_JS", "code": "alert(1)"})

    def test_wait_target_is_closed(self):
        with pytest.raises(ValidationError):
            c.WaitFor.model_validate({"target": "forever"})

    def test_defaults(self):
        assert c.Save().as_ == "item"
        assert c.GoToItem().which == "next"
        assert c.ForEachItemInList(body=[]).skip_processed is True

    def test_max_items_positive(self):
        with pytest.raises(ValidationError):
            c.RecipeConfig(maxItems=0)


class TestTemplates:
    """Test the built-in recipe templates."""

    def test_listing_extraction(self):
        recipe = TEMPLATES["listing_extraction"]("https://jobs.example.com", 15)
        assert isinstance(recipe.commands[0], c.OpenPage)
        assert recipe.commands[0].url == "https://jobs.example.com"
        assert isinstance(recipe.commands[-1], c.End)
        assert recipe.config.max_items == 15
        loop = next(cmd for cmd in recipe.commands if isinstance(cmd, c.Repeat))
        assert isinstance(loop.body[0], c.ForEachItemInList)

    def test_listing_with_search_types_query(self):
        recipe = TEMPLATES["listing_with_search"]("https://jobs.example.com", "python", 5)
        typed = [cmd for cmd in recipe.commands if isinstance(cmd, c.TypeText)]
        assert typed[0].text == "python"

    def test_all_templates_serialise(self):
        for name, template in TEMPLATES.items():
            args = ("https://example.com", "q", 3) if name == "listing_with_search" else ("https://example.com", 3)
            recipe = template(*args)
            assert c.Recipe.model_validate(recipe.to_json_dict()) == recipe


class TestLoader:
    """Test loading recipes from disk and by name."""

    def test_resolve_template(self):
        assert resolve_template("{url}/search?q={query}", {"url": "https://x", "query": "py"}) == "https://x/search?q=py"
        assert resolve_template("{unknown}", {}) == "{unknown}"
        assert resolve_template("plain", {}) == "plain"

    def test_load_from_file_substitutes(self, tmp_path):
        path = tmp_path / "r.json"
        path.write_text(json.dumps({
            "id": "r",
            "name": "R",
            "commands": [{"type": "OPEN_PAGE", "url": "{url}"}],
            "config": {"maxItems": "{max_items}"},
        }))
        recipe = load_recipe_from_file(path, {"url": "https://jobs.example.com", "max_items": 7})
        assert recipe.commands[0].url == "https://jobs.example.com"
        assert recipe.config.max_items == 7

    def test_load_dir_skips_invalid(self, tmp_path):
        (tmp_path / "good.json").write_text(json.dumps({"id": "good", "name": "Good", "commands": [{"type": "END"}]}))
        (tmp_path / "bad.json").write_text(json.dumps({"id": "bad", "commands": [{"type": "NOPE"}]}))
        (tmp_path / "broken.json").write_text("{not json")
        assert [r.id for r in load_recipes_from_dir(tmp_path)] == ["good"]

    def test_load_missing_dir(self, tmp_path):
        assert load_recipes_from_dir(tmp_path / "nope") == []

    def test_bundled_recipes_validate(self):
        recipes = load_recipes_from_dir(RECIPES_DIR)
        assert "listing_with_sort" in {r.id for r in recipes}

    def test_get_recipe_template(self):
        assert get_recipe("single_pass", "https://example.com").id == "single_pass"

    def test_get_recipe_search_requires_query(self):
        with pytest.raises(ValueError):
            get_recipe("listing_with_search", "https://example.com")

    def test_get_recipe_from_dir(self):
        recipe = get_recipe("listing_with_sort", "https://jobs.example.com", max_items=4, recipe_dir=RECIPES_DIR)
        assert recipe.commands[0].url == "https://jobs.example.com"
        assert recipe.config.max_items == 4

    def test_get_recipe_unknown(self, tmp_path):
        with pytest.raises(KeyError):
            get_recipe("nope", "https://example.com", recipe_dir=tmp_path)
