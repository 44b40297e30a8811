"""In-memory page driver for unit tests.

``FakePageDriver`` holds a small element tree and implements the
``PageDriver`` protocol over it: selectors are matched with a tiny
subset of CSS (tag, ``#id``, ``.class``, ``[attr]``, ``[attr="v"]``,
``[attr*="v"]`` and the descendant combinator), and click handlers let
a test mutate the page in response to clicks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from sitewright.driver.base import ElementInfo

INTERACTIVE_TAGS = {"a", "button", "input", "select", "textarea"}

_TOKEN_RE = re.compile(r"""(?P<tag>^[a-zA-Z][\w-]*)|\#(?P<id>[\w-]+)|\.(?P<cls>[\w-]+)|\[(?P<attr>[\w-]+)(?:(?P<op>\*?=)"?(?P<val>[^"\]]*)"?)?\]""")


@dataclass
class FakeElement:
    tag: str
    text: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    children: list["FakeElement"] = field(default_factory=list)
    visible: bool = True

    def all_text(self) -> str:
        parts = [self.text] if self.text else []
        parts.extend(child.all_text() for child in self.children)
        return " ".join(p for p in parts if p)


def el(tag: str, text: str = "", *children: FakeElement, cls: str = "", **attrs: str) -> FakeElement:
    """Build a ``FakeElement``; ``cls`` becomes the class attribute, ``data_x`` becomes ``data-x``."""
    attributes = {k.replace("_", "-"): v for k, v in attrs.items()}
    if cls:
        attributes["class"] = cls
    return FakeElement(tag=tag, text=text, attributes=attributes, children=list(children))


def listing_page(count: int = 5, *, list_cls: str = "list", item_cls: str = "item") -> FakeElement:
    """A body with one list of *count* linked items pointing at ``/jobs/101`` onwards."""
    items = [
        el("a", f"Job {100 + i} Engineer at Company {i}", cls=item_cls, href=f"/jobs/{100 + i}")
        for i in range(1, count + 1)
    ]
    return el("body", "", el("h1", "Open positions"), el("div", "", *items, cls=list_cls))


def _matches_simple(node: FakeElement, simple: str) -> bool:
    pos = 0
    for match in _TOKEN_RE.finditer(simple):
        if match.start() != pos:
            return False
        pos = match.end()
        if match.group("tag") and node.tag != match.group("tag").lower():
            return False
        if match.group("id") and node.attributes.get("id") != match.group("id"):
            return False
        if match.group("cls") and match.group("cls") not in node.attributes.get("class", "").split():
            return False
        if match.group("attr"):
            name = match.group("attr")
            if name not in node.attributes:
                return False
            op, value = match.group("op"), match.group("val")
            if op == "=" and node.attributes[name] != value:
                return False
            if op == "*=" and value not in node.attributes[name]:
                return False
    return pos == len(simple) and pos > 0


class FakePageDriver:
    """``PageDriver`` over a ``FakeElement`` tree.

    Args:
        root: The ``body`` element.
        url: Current URL.
        pages: Optional URL -> root mapping used by ``navigate``.
    """

    def __init__(
        self,
        root: FakeElement,
        url: str = "https://jobs.example.com/search",
        *,
        pages: dict[str, FakeElement] | None = None,
        title: str = "Jobs",
    ) -> None:
        self.root = root
        self._url = url
        self._title = title
        self.pages = dict(pages or {})
        self.pages.setdefault(url, root)
        self.history: list[tuple[str, FakeElement]] = []
        self.connected = True
        self.scroll_end = True

        self.clicks: list[tuple[str, int]] = []
        self.typed: list[tuple[str, str]] = []
        self.keys: list[str] = []
        self.scrolls: list[tuple[str, str | None]] = []
        self.navigations: list[str] = []
        self.selected: list[tuple[str, str]] = []
        self.checked: list[tuple[str, bool]] = []
        self.on_click: dict[str, Callable[["FakePageDriver", FakeElement], None]] = {}

    # ------------------------------------------------------------------
    # Tree helpers
    # ------------------------------------------------------------------

    def _walk(self) -> list[tuple[FakeElement, str, list[FakeElement]]]:
        """(element, xpath, ancestors) in document order."""
        out: list[tuple[FakeElement, str, list[FakeElement]]] = []

        def visit(node: FakeElement, xpath: str, ancestors: list[FakeElement]) -> None:
            out.append((node, xpath, ancestors))
            seen: dict[str, int] = {}
            for child in node.children:
                seen[child.tag] = seen.get(child.tag, 0) + 1
                visit(child, f"{xpath}/{child.tag}[{seen[child.tag]}]", ancestors + [node])

        visit(self.root, "/body", [])
        return out

    def _select(self, selector: str) -> list[tuple[FakeElement, str, list[FakeElement]]]:
        parts = selector.split()
        if not parts:
            return []
        found = []
        for node, xpath, ancestors in self._walk():
            if not _matches_simple(node, parts[-1]):
                continue
            remaining = parts[:-1]
            for ancestor in reversed(ancestors):
                if remaining and _matches_simple(ancestor, remaining[-1]):
                    remaining.pop()
            if not remaining:
                found.append((node, xpath, ancestors))
        return found

    # ------------------------------------------------------------------
    # PageDriver
    # ------------------------------------------------------------------

    async def capture_raw(self) -> dict[str, Any] | None:
        node_map: dict[str, Any] = {}
        counter = {"id": 0, "highlight": 0}

        def visit(node: FakeElement, xpath: str) -> str:
            node_id = str(counter["id"])
            counter["id"] += 1
            entry: dict[str, Any] = {
                "tagName": node.tag,
                "xpath": xpath,
                "attributes": dict(node.attributes),
                "children": [],
                "isVisible": node.visible,
                "isInteractive": node.tag in INTERACTIVE_TAGS,
                "isTopElement": True,
                "isInViewport": True,
            }
            if entry["isInteractive"] and node.visible:
                entry["highlightIndex"] = counter["highlight"]
                counter["highlight"] += 1
            node_map[node_id] = entry
            if node.text:
                text_id = str(counter["id"])
                counter["id"] += 1
                node_map[text_id] = {"type": "TEXT_NODE", "text": node.text, "isVisible": node.visible}
                entry["children"].append(text_id)
            seen: dict[str, int] = {}
            for child in node.children:
                seen[child.tag] = seen.get(child.tag, 0) + 1
                entry["children"].append(visit(child, f"{xpath}/{child.tag}[{seen[child.tag]}]"))
            return node_id

        root_id = visit(self.root, "/body")
        return {"rootId": root_id, "map": node_map}

    async def query(self, selector: str) -> list[ElementInfo]:
        return [
            ElementInfo(
                tag=node.tag,
                xpath=xpath,
                text=node.all_text(),
                attributes=dict(node.attributes),
                tag_path=[a.tag for a in ancestors[1:]] + [node.tag],
                visible=node.visible,
            )
            for node, xpath, ancestors in self._select(selector)
        ]

    async def click(self, selector: str, index: int = 0) -> bool:
        matches = self._select(selector)
        if index >= len(matches):
            return False
        self.clicks.append((selector, index))
        handler = self.on_click.get(selector)
        if handler is not None:
            handler(self, matches[index][0])
        return True

    async def type_text(self, selector: str, text: str) -> bool:
        if not self._select(selector):
            return False
        self.typed.append((selector, text))
        return True

    async def press_key(self, key: str) -> bool:
        self.keys.append(key)
        return True

    async def scroll(self, direction: str = "down", selector: str | None = None) -> bool:
        self.scrolls.append((direction, selector))
        return True

    async def at_scroll_end(self, selector: str | None = None) -> bool:
        return self.scroll_end

    async def select_option(self, selector: str, option: str) -> bool:
        if not self._select(selector):
            return False
        self.selected.append((selector, option))
        return True

    async def set_checked(self, selector: str, checked: bool) -> bool:
        if not self._select(selector):
            return False
        self.checked.append((selector, checked))
        return True

    async def clear(self, selector: str) -> bool:
        return bool(self._select(selector))

    async def navigate(self, url: str) -> bool:
        self.navigations.append(url)
        self.history.append((self._url, self.root))
        self._url = url
        if url in self.pages:
            self.root = self.pages[url]
        return True

    async def go_back(self) -> bool:
        if not self.history:
            return False
        self._url, self.root = self.history.pop()
        return True

    async def screenshot(self) -> bytes | None:
        return None

    async def wait_for_load(self, timeout: float) -> bool:
        return True

    async def url(self) -> str:
        return self._url

    async def title(self) -> str:
        return self._title

    async def is_connected(self) -> bool:
        return self.connected
