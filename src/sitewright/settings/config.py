"""Configuration loader for sitewright using Pydantic settings.

Config precedence (highest wins):
  1. CLI flags (where applicable)
  2. Environment variables (SITEWRIGHT_* with __ for nesting)
  3. settings.local.toml
  4. settings.<env>.toml
  5. settings.default.toml
"""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = Path(os.getenv("SITEWRIGHT_PROJECT_ROOT", _THIS_DIR.parents[2]))
CONFIG_DIR = PROJECT_ROOT / "config"

ENV_VAR_NAME = "SITEWRIGHT_ENV"
DEFAULT_ENV = "local"


def _resolve_env() -> str:
    return (os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()


def _load_toml(path: Path) -> dict[str, Any]:
    if path.is_file():
        with open(path, "rb") as f:
            return tomllib.load(f)
    return {}


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class LLMSettings(BaseSettings):
    """LLM provider configuration."""

    model_config = SettingsConfigDict(env_prefix="SITEWRIGHT_LLM__")

    provider: str = "ollama"
    model: str = "llama3.1"
    cheap_model: str = ""  # content parsing; falls back to ``model``
    ollama_base_url: str = "http://localhost:11434"
    temperature: float = 0.1
    max_tokens: int = 4096
    request_timeout_sec: float = 120.0
    max_retries: int = 3


class BrowserSettings(BaseSettings):
    """zendriver browser settings."""

    model_config = SettingsConfigDict(env_prefix="SITEWRIGHT_BROWSER__")

    headless: bool = True
    chrome_binary: str = ""
    action_timeout: int = 10
    page_load_timeout_sec: float = 30.0
    settle_delay_sec: float = 1.0
    allowed_domains: list[str] = Field(default_factory=list)  # empty = allow all
    blocked_domains: list[str] = Field(default_factory=list)
    safe_url: str = "about:blank"
    screenshot_resize_width: int = 1280
    screenshot_resize_height: int = 800


class BindingSettings(BaseSettings):
    """Binding store and freshness policy."""

    model_config = SettingsConfigDict(env_prefix="SITEWRIGHT_BINDINGS__")

    backend: str = "sqlite"  # sqlite | memory
    sqlite_path: str = "data/bindings.db"
    freshness_hours: float = 24.0


class RecipeSettings(BaseSettings):
    """Recipe executor and runner limits."""

    model_config = SettingsConfigDict(env_prefix="SITEWRIGHT_RECIPE__")

    recipe_dir: str = "config/recipes"
    max_retries: int = 2
    poll_interval_sec: float = 0.3
    wait_timeout_sec: float = 10.0
    max_repeat_iterations: int = 50
    no_new_items_threshold: int = 3
    details_retries: int = 3
    details_retry_delay_sec: float = 0.5
    dom_context_min_chars: int = 50
    dom_context_max_chars: int = 30_000
    fix_context_max_chars: int = 5_000


class ExplorationSettings(BaseSettings):
    """Exploration loop budgets and circuit-breaker thresholds."""

    model_config = SettingsConfigDict(env_prefix="SITEWRIGHT_EXPLORATION__")

    max_steps: int = 20
    same_selector_click_limit: int = 5
    confirmed_pattern_click_limit: int = 4
    confirmed_pattern_minimum: int = 2
    scroll_window: int = 10
    scroll_limit: int = 8
    consecutive_observe_limit: int = 5
    consolidate_every: int = 3
    consolidate_interval_sec: float = 30.0
    render_max_chars: int = 60_000
    analyzer_dom_max_chars: int = 15_000


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Root sitewright settings with nested sections."""

    model_config = SettingsConfigDict(
        env_prefix="SITEWRIGHT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    env: str = Field(default_factory=_resolve_env)
    project_root: Path = Field(default=PROJECT_ROOT)
    debug: bool = False

    llm: LLMSettings = Field(default_factory=LLMSettings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    bindings: BindingSettings = Field(default_factory=BindingSettings)
    recipe: RecipeSettings = Field(default_factory=RecipeSettings)
    exploration: ExplorationSettings = Field(default_factory=ExplorationSettings)

    @model_validator(mode="before")
    @classmethod
    def _merge_toml_files(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Layer TOML config files before env var overrides."""
        defaults = _load_toml(CONFIG_DIR / "settings.default.toml")
        env_name = (values.get("env") or os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()
        env_overrides = _load_toml(CONFIG_DIR / f"settings.{env_name}.toml")
        local_overrides = _load_toml(CONFIG_DIR / "settings.local.toml")

        # Merge: defaults < env-specific < local < explicit values
        merged: dict[str, Any] = {}
        for layer in (defaults, env_overrides, local_overrides, values):
            for key, val in layer.items():
                if isinstance(val, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **val}
                else:
                    merged[key] = val
        return merged

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Normalize relative paths against project_root."""
        root = self.project_root
        if not Path(self.bindings.sqlite_path).is_absolute():
            self.bindings.sqlite_path = str(root / self.bindings.sqlite_path)
        if not Path(self.recipe.recipe_dir).is_absolute():
            self.recipe.recipe_dir = str(root / self.recipe.recipe_dir)
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton settings instance (cached)."""
    return Settings()
