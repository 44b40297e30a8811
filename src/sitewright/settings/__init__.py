"""sitewright settings package."""

from sitewright.settings.config import Settings, get_settings

__all__ = ["Settings", "get_settings"]
