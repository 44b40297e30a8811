"""CSS selector synthesis for snapshot elements.

Two strategies are provided:

* ``selector_for`` — the durable selector handed to the driver by the
  recipe executor and navigator.  It converts the element's structural
  XPath into a CSS path with positional pseudo-classes, then appends
  class tokens and a bounded allowlist of "safe" attributes.
* ``simple_selector`` — a short, human-readable selector (id, test id,
  aria-label, first meaningful class) used to annotate clickable elements
  in the explorer's page view.

Both are deterministic for the same node.
"""

from __future__ import annotations

import logging
import re

from sitewright.dom.snapshot import ElementNode, Snapshot

logger = logging.getLogger(__name__)

_VALID_CLASS_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]*$")
_UNSAFE_VALUE_RE = re.compile(r"[\"'<>`\n\r\t]")
_WHITESPACE_RE = re.compile(r"\s+")

SAFE_ATTRIBUTES: frozenset[str] = frozenset({
    "id",
    "name",
    "type",
    "placeholder",
    "aria-label",
    "aria-labelledby",
    "aria-describedby",
    "role",
    "for",
    "autocomplete",
    "required",
    "readonly",
    "alt",
    "title",
    "src",
    "href",
    "target",
})

DYNAMIC_SAFE_ATTRIBUTES: frozenset[str] = frozenset({
    "data-id",
    "data-qa",
    "data-cy",
    "data-testid",
})


# ---------------------------------------------------------------------------
# XPath -> CSS
# ---------------------------------------------------------------------------


def xpath_to_css(xpath: str) -> str:
    """Convert a simple positional XPath (``html/body/div[2]/a``) to a CSS path.

    ``[n]`` becomes ``:nth-of-type(n)``, ``[last()]`` becomes
    ``:last-of-type`` and ``[position()>1]`` becomes ``:nth-of-type(n+2)``.
    Namespaced tags have their colon escaped.
    """
    if not xpath:
        return ""

    css_parts: list[str] = []
    for part in xpath.lstrip("/").split("/"):
        if not part:
            continue

        if "[" not in part:
            css_parts.append(part.replace(":", "\\:"))
            continue

        bracket = part.index("[")
        base = part[:bracket].replace(":", "\\:")
        predicates = [p.replace("[", "") for p in part[bracket:].split("]")[:-1]]
        for predicate in predicates:
            if predicate.isdigit():
                base += f":nth-of-type({int(predicate)})"
            elif predicate == "last()":
                base += ":last-of-type"
            elif "position()" in predicate and ">1" in predicate:
                base += ":nth-of-type(n+2)"
        css_parts.append(base)

    return " > ".join(css_parts)


def _attribute_clause(name: str, value: str) -> str:
    safe_name = name.replace(":", "\\:")
    if value == "":
        return f"[{safe_name}]"
    if _UNSAFE_VALUE_RE.search(value):
        collapsed = _WHITESPACE_RE.sub(" ", value).strip().replace('"', '\\"')
        return f'[{safe_name}*="{collapsed}"]'
    return f'[{safe_name}="{value}"]'


def enhanced_css_selector(element: ElementNode, include_dynamic_attributes: bool = True) -> str:
    """Structural path plus class tokens plus safe attributes for *element*."""
    if not element.xpath:
        return ""

    selector = xpath_to_css(element.xpath)

    class_value = element.attributes.get("class", "")
    if class_value and include_dynamic_attributes:
        for class_name in class_value.split():
            if _VALID_CLASS_RE.match(class_name):
                selector += f".{class_name}"

    allowed = SAFE_ATTRIBUTES | DYNAMIC_SAFE_ATTRIBUTES if include_dynamic_attributes else SAFE_ATTRIBUTES
    for name, value in element.attributes.items():
        if name == "class" or not name.strip() or name not in allowed:
            continue
        selector += _attribute_clause(name, value)

    return selector


def selector_for(snapshot: Snapshot, node_id: int, include_dynamic_attributes: bool = True) -> str:
    """Return a robust CSS selector for the element *node_id*.

    Falls back to ``tag[highlightIndex='N']`` (usable only within the
    current capture) when the structural selector cannot be built.
    """
    element = snapshot.element(node_id)
    try:
        selector = enhanced_css_selector(element, include_dynamic_attributes)
        if selector:
            return selector
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug("Selector synthesis failed for node %d: %s", node_id, e)
    tag = element.tag or "*"
    return f"{tag}[highlightIndex='{element.highlight_index}']"


# ---------------------------------------------------------------------------
# Short selectors for the explorer view
# ---------------------------------------------------------------------------


def _meaningful_class(class_value: str) -> str | None:
    for name in class_value.split():
        if len(name) > 2 and "--" not in name and not re.fullmatch(r"[a-z]{1,2}", name):
            return name
    return None


def simple_selector(element: ElementNode) -> str:
    """Short selector preferring id, test id, aria-label, then the first meaningful class."""
    attrs = element.attributes
    tag = element.tag or "div"
    element_id = attrs.get("id")
    if element_id:
        if _VALID_CLASS_RE.match(element_id):
            return f"#{element_id}"
        escaped = element_id.replace('"', '\\"')
        return f'[id="{escaped}"]'
    if attrs.get("data-testid"):
        return f'[data-testid="{attrs["data-testid"]}"]'
    if attrs.get("aria-label"):
        full = attrs["aria-label"]
        label = full[:30].replace('"', '\\"')
        operator = "^=" if len(full) > 30 else "="
        return f'{tag}[aria-label{operator}"{label}"]'
    meaningful = _meaningful_class(attrs.get("class", ""))
    if meaningful:
        return f"{tag}.{meaningful}"
    return tag
