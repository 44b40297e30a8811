"""Text renderers that turn a ``Snapshot`` into compact LLM context.

Three views are produced from the same snapshot:

* ``render_for_model`` — the indexed line format used when the model must
  refer to interactive elements by highlight index::

      [12]<a href=/jobs/view/1… >Senior Engineer />
      *[13]<button aria-label=Save >Save />

  A leading ``*`` marks elements that were not present in the previous
  capture.  Attributes are limited to an allowlist and deduplicated
  against each other and against the visible text.

* ``render_dom_context`` — the navigator's view, one line per highlighted
  element with the attributes that matter when writing CSS selectors
  (classes, id, href path, ``data-*`` ids, role) followed by the durable
  ``selector_for`` selector after ``@``.

* ``render_for_explorer`` — an indented tree with every interactive
  element annotated ``[CLICK: "selector"]`` so the decision agent can only
  act on selectors that exist in the current capture.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from sitewright.dom.selectors import selector_for, simple_selector
from sitewright.dom.snapshot import ElementNode, Snapshot, TextNode

DEFAULT_INCLUDE_ATTRIBUTES: tuple[str, ...] = (
    "title",
    "type",
    "checked",
    "name",
    "role",
    "value",
    "placeholder",
    "data-date-format",
    "data-state",
    "alt",
    "aria-checked",
    "aria-label",
    "aria-expanded",
    "href",
)

_TEXT_DUPLICATE_ATTRIBUTES = ("aria-label", "placeholder", "title")
_NOISE_TAGS = frozenset({"script", "style", "noscript", "svg", "path", "code", "img"})
_BOILERPLATE_TAGS = frozenset({"header", "footer", "nav"})
_BOILERPLATE_ROLES = frozenset({"navigation", "banner", "contentinfo"})
_HREF_PATH_RE = re.compile(r"/[^?#]*")
_DATA_ID_ATTRIBUTES = ("data-id", "data-job-id", "data-occludable-job-id", "data-entity-urn", "data-testid")


def cap_text_length(text: str, max_length: int) -> str:
    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


# ---------------------------------------------------------------------------
# Indexed model view
# ---------------------------------------------------------------------------


def _select_attributes(element: ElementNode, text: str, allowlist: Sequence[str]) -> dict[str, str]:
    chosen = {
        key: str(value).strip()
        for key, value in element.attributes.items()
        if key in allowlist and str(value).strip()
    }
    ordered = [key for key in allowlist if key in chosen]

    if len(ordered) > 1:
        seen: set[str] = set()
        for key in ordered:
            value = chosen[key]
            if len(value) > 5:
                if value in seen:
                    del chosen[key]
                else:
                    seen.add(value)

    if chosen.get("role") == element.tag:
        del chosen["role"]

    lowered_text = text.strip().lower()
    for key in _TEXT_DUPLICATE_ATTRIBUTES:
        if key in chosen and chosen[key].strip().lower() == lowered_text:
            del chosen[key]

    return {key: chosen[key] for key in allowlist if key in chosen}


def render_for_model(snapshot: Snapshot, include_attributes: Sequence[str] | None = None) -> str:
    """Render highlighted elements and top-level visible text as indexed lines."""
    allowlist = tuple(include_attributes) if include_attributes else DEFAULT_INCLUDE_ATTRIBUTES
    lines: list[str] = []

    def _walk(node_id: int, depth: int) -> None:
        node = snapshot.node(node_id)
        indent = "\t" * depth

        if isinstance(node, TextNode):
            if snapshot.has_highlighted_ancestor(node_id) or node.parent is None:
                return
            parent = snapshot.element(node.parent)
            if parent.is_visible and parent.is_top_element:
                lines.append(f"{indent}{node.text}")
            return

        next_depth = depth
        if node.highlight_index is not None:
            next_depth += 1
            text = snapshot.text_until_next_interactive(node_id)
            attrs = _select_attributes(node, text, allowlist)
            attr_str = " ".join(f"{k}={cap_text_length(v, 15)}" for k, v in attrs.items())
            marker = f"*[{node.highlight_index}]" if node.is_new else f"[{node.highlight_index}]"

            line = f"{indent}{marker}<{node.tag}"
            if attr_str:
                line += f" {attr_str}"
            if text:
                if not attr_str:
                    line += " "
                line += f">{text.strip()}"
            elif not attr_str:
                line += " "
            line += " />"
            lines.append(line)

        for child_id in node.children:
            _walk(child_id, next_depth)

    _walk(snapshot.root_id, 0)
    return "\n".join(lines)


def render_new_elements(snapshot: Snapshot, limit: int = 30) -> str:
    """Lines of ``render_for_model`` for elements flagged ``is_new``, unindented."""
    marked = [line.strip() for line in render_for_model(snapshot).splitlines() if line.lstrip().startswith("*[")]
    return "\n".join(marked[:limit])


# ---------------------------------------------------------------------------
# Navigator DOM context
# ---------------------------------------------------------------------------


def render_dom_context(snapshot: Snapshot, max_chars: int | None = None) -> str:
    """Selector-oriented listing of highlighted elements for binding discovery and repair."""
    lines: list[str] = []

    def _walk(node_id: int, depth: int) -> None:
        node = snapshot.node(node_id)
        if not isinstance(node, ElementNode):
            return
        if node.highlight_index is not None:
            attrs = node.attributes
            parts: list[str] = []
            classes = attrs.get("class", "").split()[:4]
            if classes:
                parts.append(f'class="{" ".join(classes)}"')
            if attrs.get("id"):
                parts.append(f'id="{attrs["id"][:40]}"')
            href_match = _HREF_PATH_RE.search(attrs.get("href", ""))
            if href_match:
                parts.append(f'href="{href_match.group(0)[:50]}"')
            for key in _DATA_ID_ATTRIBUTES:
                if attrs.get(key):
                    parts.append(f'{key}="{attrs[key][:50]}"')
            if attrs.get("role"):
                parts.append(f'role="{attrs["role"]}"')

            text = snapshot.text_until_next_interactive(node_id)[:60].strip().replace("\n", " ")
            attr_str = (" " + " ".join(parts)) if parts else ""
            text_str = f">{text}" if text else " />"
            indent = "  " * min(depth, 4)
            lines.append(
                f"{indent}[{node.highlight_index}]<{node.tag}{attr_str}{text_str} @ {selector_for(snapshot, node_id)}"
            )

        for child_id in node.children:
            _walk(child_id, depth + 1)

    _walk(snapshot.root_id, 0)
    context = "\n".join(lines)
    if max_chars is not None and len(context) > max_chars:
        context = context[:max_chars]
    return context


# ---------------------------------------------------------------------------
# Explorer tree view
# ---------------------------------------------------------------------------


def describe_interaction(tag: str, attributes: dict[str, str]) -> str:
    """Behaviour hints derived from ARIA and form attributes, e.g. `` (opens menu)``."""
    hints: list[str] = []

    expanded = attributes.get("aria-expanded")
    if expanded is not None:
        hints.append("expanded" if expanded == "true" else "collapsed, click to expand")
    popup = attributes.get("aria-haspopup")
    if popup:
        hints.append({
            "dialog": "opens dialog",
            "menu": "opens menu",
            "listbox": "opens dropdown",
            "true": "opens popup",
        }.get(popup, "opens popup"))
    if attributes.get("aria-controls"):
        hints.append(f"controls: {attributes['aria-controls']}")
    pressed = attributes.get("aria-pressed")
    if pressed is not None:
        hints.append("pressed/active" if pressed == "true" else "not pressed")
    selected = attributes.get("aria-selected")
    if selected is not None:
        hints.append("selected" if selected == "true" else "not selected")
    checked = attributes.get("aria-checked")
    if checked is not None:
        hints.append("checked" if checked == "true" else "unchecked")

    input_type = attributes.get("type")
    if input_type == "submit":
        hints.append("submits form")
    elif input_type == "checkbox":
        hints.append("toggleable")
    elif input_type == "radio":
        hints.append("selectable option")

    href = attributes.get("href")
    if tag == "a" and href:
        if href.startswith("#"):
            hints.append("scrolls to section")
        elif attributes.get("target") == "_blank":
            hints.append("opens in new tab")
        else:
            hints.append("navigates")

    role_hint = {
        "tab": "switches tab",
        "switch": "toggleable switch",
        "menuitem": "menu action",
        "option": "selectable option",
    }.get(attributes.get("role", ""))
    if role_hint:
        hints.append(role_hint)

    return f" ({', '.join(hints)})" if hints else ""


def _is_boilerplate(element: ElementNode) -> bool:
    attrs = element.attributes
    role = attrs.get("role", "").lower()
    element_id = attrs.get("id", "").lower()
    class_name = attrs.get("class", "").lower()
    if element.tag in _BOILERPLATE_TAGS or role in _BOILERPLATE_ROLES:
        return True
    if any(token in element_id for token in ("header", "footer", "nav")):
        return True
    return any(token in class_name for token in ("global-nav", "header", "footer"))


def render_for_explorer(snapshot: Snapshot, max_chars: int | None = None) -> str:
    """Indented page tree with ``[CLICK: "selector"]`` annotations on interactive elements.

    Noise tags are skipped; inside header/nav/footer containers only the
    interactive elements are listed.
    """
    lines: list[str] = []

    def _walk(node_id: int, indent: int, in_boilerplate: bool) -> None:
        node = snapshot.element(node_id)
        if node.tag in _NOISE_TAGS:
            return

        boilerplate = in_boilerplate or _is_boilerplate(node)
        if boilerplate and not node.is_interactive:
            for child_id in node.children:
                if isinstance(snapshot.node(child_id), ElementNode):
                    _walk(child_id, indent, True)
            return

        attrs = node.attributes
        parts = [node.tag]
        if attrs.get("id"):
            parts.append(f"#{attrs['id']}")
        if attrs.get("role") and attrs["role"] != node.tag:
            parts.append(f'role="{attrs["role"]}"')
        if attrs.get("aria-label"):
            parts.append(f'"{attrs["aria-label"][:50]}"')
        if node.tag == "a" and attrs.get("href"):
            href = attrs["href"]
            parts.append(f'href="...{href[-30:]}"' if len(href) > 50 else f'href="{href}"')
        if node.tag == "input":
            if attrs.get("type"):
                parts.append(f'type="{attrs["type"]}"')
            if attrs.get("placeholder"):
                parts.append(f'placeholder="{attrs["placeholder"]}"')
        if node.is_interactive:
            hints = describe_interaction(node.tag, attrs)
            parts.append(f'[CLICK: "{simple_selector(node)}"{hints}]')

        spaces = "  " * indent
        lines.append(f"{spaces}{' '.join(parts)}")

        for child_id in node.children:
            child = snapshot.node(child_id)
            if isinstance(child, ElementNode):
                _walk(child_id, indent + 1, boilerplate)
            elif not boilerplate and child.text.strip():
                text = child.text.strip()
                suffix = "..." if len(text) > 100 else ""
                lines.append(f'{spaces}  "{text[:100]}{suffix}"')

    _walk(snapshot.root_id, 0, False)
    rendered = "\n".join(lines)
    if max_chars is not None and len(rendered) > max_chars:
        rendered = rendered[:max_chars]
    return rendered


_CLICK_ANNOTATION_RE = re.compile(r'\[CLICK: "(.*)"(?: \([^()]*\))?\]$', re.MULTILINE)


def clickable_selectors(rendered: str) -> set[str]:
    """Every ``[CLICK: "..."]`` selector present in an explorer rendering."""
    return set(_CLICK_ANNOTATION_RE.findall(rendered))
