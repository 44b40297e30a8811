"""sitewright — adaptive web-data extraction with self-healing recipes and LLM exploration."""

from __future__ import annotations

try:
    from importlib.metadata import version

    __version__ = version("sitewright")
except Exception:
    __version__ = "0.0.0"
