"""Element identity hashing for cross-snapshot continuity.

Highlight indices are capture-local, so "have I already seen this element"
is answered with a fingerprint of three stable-ish properties::

    sha256(branch tag path) - sha256(sorted key=value attributes) - sha256(xpath)

The fingerprint is a heuristic: an element whose ancestors and attributes
are unchanged always hashes the same, but two distinct elements can
collide.  Never use it as a primary key.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from sitewright.dom.snapshot import Snapshot


@dataclass(frozen=True)
class ElementIdentity:
    """The three component hashes of an element fingerprint."""

    branch_path_hash: str
    attributes_hash: str
    xpath_hash: str

    @property
    def value(self) -> str:
        return f"{self.branch_path_hash}-{self.attributes_hash}-{self.xpath_hash}"

    def __str__(self) -> str:
        return self.value


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def branch_path(snapshot: Snapshot, node_id: int) -> list[str]:
    """Tag names from just below the root down to *node_id* (inclusive)."""
    element = snapshot.element(node_id)
    if element.parent is None:
        return []
    tags = [element.tag]
    for ancestor in snapshot.ancestors(node_id):
        if ancestor.parent is None:
            break
        tags.append(ancestor.tag)
    tags.reverse()
    return tags


def identity_from_parts(
    tag_path: Iterable[str],
    attributes: Mapping[str, str],
    xpath: str | None,
) -> ElementIdentity:
    """Fingerprint an element described outside a snapshot (e.g. a driver query result)."""
    attributes_text = "".join(f"{key}={attributes[key]}" for key in sorted(attributes))
    return ElementIdentity(
        branch_path_hash=_sha256("/".join(tag_path)),
        attributes_hash=_sha256(attributes_text),
        xpath_hash=_sha256(xpath or ""),
    )


def identity(snapshot: Snapshot, node_id: int) -> ElementIdentity:
    """Fingerprint the element *node_id* of *snapshot*. Pure and deterministic."""
    element = snapshot.element(node_id)
    return identity_from_parts(branch_path(snapshot, node_id), element.attributes, element.xpath)


def clickable_identities(snapshot: Snapshot) -> set[str]:
    """Identity values of every highlighted element in the snapshot."""
    return {identity(snapshot, el.id).value for el in snapshot.interactive_elements()}


def mark_new_elements(snapshot: Snapshot, previous: set[str]) -> int:
    """Flag highlighted elements absent from *previous* as ``is_new``.

    Returns the number of elements flagged.  An empty *previous* set
    (first capture) flags nothing.
    """
    if not previous:
        return 0
    flagged = 0
    for element in snapshot.interactive_elements():
        element.is_new = identity(snapshot, element.id).value not in previous
        flagged += int(element.is_new)
    return flagged
