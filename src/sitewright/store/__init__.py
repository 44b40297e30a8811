"""sitewright store — binding persistence (SQLite via SQLAlchemy, or in memory)."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sitewright.store.binding_store import BindingStore


def build_binding_store(db_path: str | Path | None = None) -> "BindingStore":
    """Factory: return the ``BindingStore`` selected by ``bindings.backend``.

    Args:
        db_path: Optional override for the SQLite file path.

    Returns:
        ``InMemoryBindingStore`` for the ``memory`` backend, otherwise a
        ``SqlBindingStore``.
    """
    from sitewright.settings import get_settings
    from sitewright.store.binding_store import InMemoryBindingStore, SqlBindingStore

    backend = get_settings().bindings.backend
    if backend == "memory":
        return InMemoryBindingStore()
    if backend != "sqlite":
        raise ValueError(f"Unknown bindings backend: {backend!r}")
    return SqlBindingStore(db_path=db_path)
