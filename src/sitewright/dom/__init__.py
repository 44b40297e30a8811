"""Page snapshot model, identity hashing, selector synthesis and renderers."""

from sitewright.dom.identity import (
    ElementIdentity,
    clickable_identities,
    identity,
    identity_from_parts,
    mark_new_elements,
)
from sitewright.dom.render import render_dom_context, render_for_explorer, render_for_model, render_new_elements
from sitewright.dom.selectors import selector_for, simple_selector
from sitewright.dom.snapshot import ElementNode, Snapshot, TextNode, build_snapshot, capture, empty_snapshot

__all__ = [
    "ElementIdentity",
    "ElementNode",
    "Snapshot",
    "TextNode",
    "build_snapshot",
    "capture",
    "clickable_identities",
    "empty_snapshot",
    "identity",
    "identity_from_parts",
    "mark_new_elements",
    "render_dom_context",
    "render_for_explorer",
    "render_for_model",
    "render_new_elements",
    "selector_for",
    "simple_selector",
]
