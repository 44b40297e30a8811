"""Unit tests for sitewright settings.

Covers default loading, env var overrides, TOML layering, path
resolution, and the defaults of each settings section: llm, browser,
bindings, recipe, exploration.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture()
def config_dir(tmp_path: Path, monkeypatch) -> Path:
    """Point the TOML loader at an empty temporary config directory."""
    import sitewright.settings.config as config

    monkeypatch.setattr(config, "CONFIG_DIR", tmp_path)
    monkeypatch.delenv("SITEWRIGHT_ENV", raising=False)
    return tmp_path


class TestSettings:
    """Core settings loading and override mechanics."""

    def test_default_settings_load(self, monkeypatch):
        """Settings should load without any env overrides."""
        monkeypatch.delenv("SITEWRIGHT_ENV", raising=False)
        from sitewright.settings import get_settings

        s = get_settings()
        assert s.env == "local"
        assert s.llm.provider == "ollama"
        assert s.bindings.backend == "sqlite"

    def test_get_settings_cached(self):
        from sitewright.settings import get_settings

        assert get_settings() is get_settings()

    def test_env_override(self, monkeypatch):
        """SITEWRIGHT_LLM__MODEL should override the default."""
        monkeypatch.setenv("SITEWRIGHT_LLM__MODEL", "qwen2.5")
        from sitewright.settings.config import Settings

        assert Settings().llm.model == "qwen2.5"

    def test_nested_env_var_override_double_underscore(self, monkeypatch):
        monkeypatch.setenv("SITEWRIGHT_EXPLORATION__MAX_STEPS", "7")
        from sitewright.settings.config import Settings

        assert Settings().exploration.max_steps == 7

    def test_multiple_section_overrides(self, monkeypatch):
        monkeypatch.setenv("SITEWRIGHT_BINDINGS__BACKEND", "memory")
        monkeypatch.setenv("SITEWRIGHT_RECIPE__MAX_RETRIES", "5")
        monkeypatch.setenv("SITEWRIGHT_BROWSER__HEADLESS", "false")
        from sitewright.settings.config import Settings

        s = Settings()
        assert s.bindings.backend == "memory"
        assert s.recipe.max_retries == 5
        assert s.browser.headless is False

    def test_paths_resolved_relative_to_project_root(self):
        from sitewright.settings.config import Settings

        s = Settings()
        assert os.path.isabs(s.bindings.sqlite_path)
        assert os.path.isabs(s.recipe.recipe_dir)
        assert s.recipe.recipe_dir.startswith(str(s.project_root))

    def test_absolute_paths_kept(self, tmp_path, monkeypatch):
        db = tmp_path / "b.db"
        monkeypatch.setenv("SITEWRIGHT_BINDINGS__SQLITE_PATH", str(db))
        from sitewright.settings.config import Settings

        assert Settings().bindings.sqlite_path == str(db)


class TestTomlLayering:
    """Test default < env-specific < local < env var precedence."""

    def test_default_file(self, config_dir):
        (config_dir / "settings.default.toml").write_text('[llm]\nmodel = "mistral"\n')
        from sitewright.settings.config import Settings

        s = Settings()
        assert s.llm.model == "mistral"
        assert s.llm.provider == "ollama"

    def test_env_file_over_default(self, config_dir, monkeypatch):
        (config_dir / "settings.default.toml").write_text('[llm]\nmodel = "mistral"\ntemperature = 0.5\n')
        (config_dir / "settings.staging.toml").write_text('[llm]\nmodel = "llama3.2"\n')
        monkeypatch.setenv("SITEWRIGHT_ENV", "staging")
        from sitewright.settings.config import Settings

        s = Settings()
        assert s.env == "staging"
        assert s.llm.model == "llama3.2"
        assert s.llm.temperature == 0.5

    def test_local_file_over_env_file(self, config_dir, monkeypatch):
        (config_dir / "settings.staging.toml").write_text("[exploration]\nmax_steps = 10\n")
        (config_dir / "settings.local.toml").write_text("[exploration]\nmax_steps = 12\n")
        monkeypatch.setenv("SITEWRIGHT_ENV", "staging")
        from sitewright.settings.config import Settings

        assert Settings().exploration.max_steps == 12

    def test_missing_files_ignored(self, config_dir):
        from sitewright.settings.config import Settings

        assert Settings().exploration.max_steps == 20

    def test_explicit_values_win(self, config_dir):
        (config_dir / "settings.default.toml").write_text("debug = false\n")
        from sitewright.settings.config import Settings

        assert Settings(debug=True).debug is True


class TestSectionDefaults:
    def test_llm(self):
        from sitewright.settings.config import LLMSettings

        s = LLMSettings()
        assert s.ollama_base_url == "http://localhost:11434"
        assert s.cheap_model == ""
        assert s.max_retries == 3

    def test_browser(self):
        from sitewright.settings.config import BrowserSettings

        s = BrowserSettings()
        assert s.headless is True
        assert s.allowed_domains == []
        assert s.safe_url == "about:blank"

    def test_bindings(self):
        from sitewright.settings.config import BindingSettings

        s = BindingSettings()
        assert s.freshness_hours == 24.0

    def test_recipe(self):
        from sitewright.settings.config import RecipeSettings

        s = RecipeSettings()
        assert s.max_retries == 2
        assert s.no_new_items_threshold == 3
        assert s.dom_context_min_chars == 50

    def test_exploration(self):
        from sitewright.settings.config import ExplorationSettings

        s = ExplorationSettings()
        assert s.max_steps == 20
        assert s.same_selector_click_limit == 5
        assert s.scroll_limit == 8
        assert s.consecutive_observe_limit == 5
        assert s.consolidate_every == 3
