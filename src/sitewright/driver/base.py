"""Driver interface consumed by the snapshot model, executor and explorer.

A driver owns exactly one browser page.  Every method is a suspension
point; callers never issue two driver calls concurrently for the same
session.  Selector resolution happens in the live page (``query``), so
the core never needs a CSS engine of its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlparse

from sitewright.exceptions import DisallowedNavigationError


@dataclass
class ElementInfo:
    """One element matched by ``PageDriver.query``.

    ``tag_path`` lists tag names from below the root down to the element,
    matching the branch path used by the identity hasher.
    """

    tag: str
    xpath: str = ""
    text: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    tag_path: list[str] = field(default_factory=list)
    visible: bool = True


@runtime_checkable
class PageDriver(Protocol):
    """Async browser page operations required by sitewright."""

    async def capture_raw(self) -> dict[str, Any] | None: ...

    async def query(self, selector: str) -> list[ElementInfo]: ...

    async def click(self, selector: str, index: int = 0) -> bool: ...

    async def type_text(self, selector: str, text: str) -> bool: ...

    async def press_key(self, key: str) -> bool: ...

    async def scroll(self, direction: str = "down", selector: str | None = None) -> bool: ...

    async def at_scroll_end(self, selector: str | None = None) -> bool: ...

    async def select_option(self, selector: str, option: str) -> bool: ...

    async def set_checked(self, selector: str, checked: bool) -> bool: ...

    async def clear(self, selector: str) -> bool: ...

    async def navigate(self, url: str) -> bool: ...

    async def go_back(self) -> bool: ...

    async def screenshot(self) -> bytes | None: ...

    async def wait_for_load(self, timeout: float) -> bool: ...

    async def url(self) -> str: ...

    async def title(self) -> str: ...

    async def is_connected(self) -> bool: ...


# ---------------------------------------------------------------------------
# Navigation policy
# ---------------------------------------------------------------------------


def _host_matches(host: str, domain: str) -> bool:
    domain = domain.lower().lstrip(".")
    return host == domain or host.endswith("." + domain)


def check_navigation_allowed(
    url: str,
    allowed_domains: list[str] | None = None,
    blocked_domains: list[str] | None = None,
) -> None:
    """Raise ``DisallowedNavigationError`` when *url* violates the allow/deny lists.

    An empty allow list permits every host not explicitly blocked.  Only
    ``http``/``https``/``about:blank`` targets are navigable.
    """
    if url == "about:blank":
        return
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise DisallowedNavigationError(url, f"scheme {parsed.scheme or '(none)'!r} not allowed")
    host = (parsed.hostname or "").lower()
    for domain in blocked_domains or []:
        if _host_matches(host, domain):
            raise DisallowedNavigationError(url, f"domain {domain} is blocked")
    if allowed_domains and not any(_host_matches(host, d) for d in allowed_domains):
        raise DisallowedNavigationError(url, "domain not in allow list")
