"""Browser drivers.  ``ZenDriver`` is imported lazily so the core stays browser-free."""

from sitewright.driver.base import ElementInfo, PageDriver, check_navigation_allowed

__all__ = ["ElementInfo", "PageDriver", "check_navigation_allowed"]
