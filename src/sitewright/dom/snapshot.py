"""Page snapshot model — an arena of DOM nodes captured from the live page.

A ``Snapshot`` is built once per capture from the raw node map returned by
the driver's in-page walker and discarded on the next capture.  Nodes live
in a flat list addressed by integer id; children are id lists and
``parent`` is an optional id, so the tree carries no owning cycles.

Raw input format (one entry per node, keyed by string id)::

    {
        "rootId": "0",
        "map": {
            "0": {"tagName": "body", "xpath": "", "attributes": {},
                  "children": ["1", "2"], "isVisible": true, ...},
            "1": {"type": "TEXT_NODE", "text": "Hello", "isVisible": true},
            ...
        }
    }

``highlightIndex`` is a dense, capture-local integer.  The builder only
keeps it on nodes that are both interactive and visible, and drops
duplicates, so ``selector_map`` always has exactly one node per index.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from sitewright.exceptions import DisallowedNavigationError, SitewrightError

if TYPE_CHECKING:
    from sitewright.driver.base import PageDriver

logger = logging.getLogger(__name__)

_SPECIAL_URL_PREFIXES: tuple[str, ...] = (
    "about:",
    "chrome://",
    "chrome-extension://",
    "edge://",
    "devtools://",
    "view-source:",
)

_NEW_TAB_URLS: frozenset[str] = frozenset({
    "",
    "about:blank",
    "about:newtab",
    "chrome://newtab/",
    "chrome://new-tab-page/",
})


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------


@dataclass
class TextNode:
    """A text node; ``parent`` is the id of the owning element."""

    id: int
    text: str
    is_visible: bool = True
    parent: int | None = None


@dataclass
class ElementNode:
    """An element node with the flags reported by the in-page walker."""

    id: int
    tag: str
    xpath: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    children: list[int] = field(default_factory=list)
    parent: int | None = None
    is_visible: bool = False
    is_interactive: bool = False
    is_top_element: bool = False
    is_in_viewport: bool = False
    shadow_root: bool = False
    highlight_index: int | None = None
    is_new: bool = False


DOMNode = Union[ElementNode, TextNode]


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass
class Snapshot:
    """One capture of the page: node arena, root id and highlight lookup."""

    url: str
    nodes: list[DOMNode]
    root_id: int = 0
    title: str = ""
    selector_map: dict[int, int] = field(default_factory=dict)

    @property
    def root(self) -> ElementNode:
        return self.element(self.root_id)

    def node(self, node_id: int) -> DOMNode:
        return self.nodes[node_id]

    def element(self, node_id: int) -> ElementNode:
        """Return the element with *node_id* or raise ``TypeError`` for text nodes."""
        node = self.nodes[node_id]
        if not isinstance(node, ElementNode):
            raise TypeError(f"Node {node_id} is a text node")
        return node

    def by_highlight(self, index: int) -> ElementNode | None:
        """O(1) lookup of the element carrying highlight *index*."""
        node_id = self.selector_map.get(index)
        return None if node_id is None else self.element(node_id)

    def iter_elements(self) -> Iterator[ElementNode]:
        """Yield element nodes in document (pre-)order starting at the root."""
        stack = [self.root_id]
        while stack:
            node = self.nodes[stack.pop()]
            if isinstance(node, ElementNode):
                yield node
                stack.extend(reversed(node.children))

    def interactive_elements(self) -> list[ElementNode]:
        """Highlighted elements ordered by highlight index."""
        return [self.element(self.selector_map[i]) for i in sorted(self.selector_map)]

    def ancestors(self, node_id: int) -> list[ElementNode]:
        """Ancestors of *node_id*, nearest first."""
        result: list[ElementNode] = []
        parent = self.nodes[node_id].parent
        while parent is not None:
            element = self.element(parent)
            result.append(element)
            parent = element.parent
        return result

    def find_by_xpath(self, xpath: str) -> ElementNode | None:
        if not xpath:
            return None
        for element in self.iter_elements():
            if element.xpath == xpath:
                return element
        return None

    def text_until_next_interactive(self, node_id: int, max_depth: int = -1) -> str:
        """Collect descendant text of *node_id*, stopping at nested highlighted elements.

        A child button's label is therefore never swallowed into its
        parent's text.  ``max_depth`` of ``-1`` means unbounded.
        """
        parts: list[str] = []

        def _collect(current_id: int, depth: int) -> None:
            if max_depth != -1 and depth > max_depth:
                return
            node = self.nodes[current_id]
            if isinstance(node, TextNode):
                parts.append(node.text)
                return
            if current_id != node_id and node.highlight_index is not None:
                return
            for child_id in node.children:
                _collect(child_id, depth + 1)

        _collect(node_id, 0)
        return "\n".join(parts).strip()

    def has_highlighted_ancestor(self, node_id: int) -> bool:
        return any(a.highlight_index is not None for a in self.ancestors(node_id))

    @property
    def is_inert(self) -> bool:
        root = self.root
        return not root.children and not root.is_interactive


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def is_special_url(url: str) -> bool:
    """Return True for new-tab and browser-internal URLs that are never walked."""
    stripped = (url or "").strip().lower()
    return stripped in _NEW_TAB_URLS or stripped.startswith(_SPECIAL_URL_PREFIXES)


def empty_snapshot(url: str, title: str = "") -> Snapshot:
    """A snapshot holding a single inert ``body`` root (no children, not interactive)."""
    root = ElementNode(id=0, tag="body", xpath="", is_visible=False)
    return Snapshot(url=url, title=title, nodes=[root], root_id=0)


def build_snapshot(raw: dict[str, Any], url: str, title: str = "") -> Snapshot:
    """Build a ``Snapshot`` from the walker's ``{rootId, map}`` payload.

    Args:
        raw: The raw node map returned by ``PageDriver.capture_raw()``.
        url: The page URL at capture time.
        title: The page title at capture time.

    Returns:
        The constructed snapshot.

    Raises:
        SitewrightError: If the payload is malformed or the root is not an element.
    """
    node_map = raw.get("map") if isinstance(raw, dict) else None
    raw_root = raw.get("rootId") if isinstance(raw, dict) else None
    if not isinstance(node_map, dict) or raw_root is None:
        raise SitewrightError("Failed to build DOM tree: no result or invalid structure")

    id_lookup: dict[str, int] = {}
    nodes: list[DOMNode] = []

    # First pass: create nodes
    for raw_id, data in node_map.items():
        if not isinstance(data, dict):
            continue
        node_id = len(nodes)
        if data.get("type") == "TEXT_NODE":
            nodes.append(TextNode(
                id=node_id,
                text=str(data.get("text", "")),
                is_visible=bool(data.get("isVisible", False)),
            ))
        else:
            nodes.append(ElementNode(
                id=node_id,
                tag=(data.get("tagName") or "").lower(),
                xpath=data.get("xpath") or "",
                attributes={str(k): str(v) for k, v in (data.get("attributes") or {}).items()},
                is_visible=bool(data.get("isVisible", False)),
                is_interactive=bool(data.get("isInteractive", False)),
                is_top_element=bool(data.get("isTopElement", False)),
                is_in_viewport=bool(data.get("isInViewport", False)),
                shadow_root=bool(data.get("shadowRoot", False)),
                highlight_index=data.get("highlightIndex"),
            ))
        id_lookup[str(raw_id)] = node_id

    root_id = id_lookup.get(str(raw_root))
    if root_id is None or not isinstance(nodes[root_id], ElementNode):
        raise SitewrightError("Failed to parse HTML root element")

    # Second pass: wire children / parents
    for raw_id, data in node_map.items():
        node_id = id_lookup.get(str(raw_id))
        if node_id is None:
            continue
        node = nodes[node_id]
        if not isinstance(node, ElementNode):
            continue
        for child_raw in data.get("children") or []:
            child_id = id_lookup.get(str(child_raw))
            if child_id is None or nodes[child_id].parent is not None or child_id == root_id:
                continue
            nodes[child_id].parent = node_id
            node.children.append(child_id)

    snapshot = Snapshot(url=url, title=title, nodes=nodes, root_id=root_id)
    _index_highlights(snapshot)
    return snapshot


def _index_highlights(snapshot: Snapshot) -> None:
    """Populate ``selector_map`` with dense indices.

    Indices on non-interactive or invisible nodes are dropped, duplicates
    keep the first occurrence, and the survivors are renumbered
    ``0..n-1`` in their original order.
    """
    kept: dict[int, ElementNode] = {}
    for element in snapshot.iter_elements():
        index = element.highlight_index
        if index is None:
            continue
        if not (element.is_interactive and element.is_visible) or not isinstance(index, int):
            element.highlight_index = None
            continue
        if index in kept:
            logger.warning("Duplicate highlight index %d on <%s>; dropping", index, element.tag)
            element.highlight_index = None
            continue
        kept[index] = element

    for dense, original in enumerate(sorted(kept)):
        element = kept[original]
        element.highlight_index = dense
        snapshot.selector_map[dense] = element.id


async def capture(driver: "PageDriver") -> Snapshot:
    """Capture a fresh snapshot from *driver*.

    Special and disallowed URLs yield an inert single-node snapshot
    instead of raising.
    """
    url = await driver.url()
    title = await driver.title()
    if is_special_url(url):
        logger.debug("Special URL %r; returning inert snapshot", url)
        return empty_snapshot(url, title)
    try:
        raw = await driver.capture_raw()
    except DisallowedNavigationError as e:
        logger.warning("Capture refused for %s: %s", url, e.reason)
        return empty_snapshot(url, title)
    if raw is None:
        return empty_snapshot(url, title)
    return build_snapshot(raw, url=url, title=title)
