"""Binding persistence: versioned per-site bindings with freshness rules.

Two backends share the ``BindingStore`` interface:

* ``SqlBindingStore`` follows the constructor / session pattern of the
  other SQLAlchemy stores: accept an optional *db_path* for convenience
  or a pre-built *session_factory* for shared engines and tests.
* ``InMemoryBindingStore`` keeps bindings in a dict for tests and
  one-off runs.

Lookup is by URL: a stored record matches when its ``urlPattern`` is a
substring of the URL or the URL a substring of the pattern.  Among
matches the most recently updated wins.  Writes are last-writer-wins
with no cross-session locking.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker

from sitewright.exceptions import BindingInvalidError
from sitewright.recipe.bindings import PageBindings, ValidationReport, validate_bindings
from sitewright.store import sql as sql_schema
from sitewright.store.sql import METADATA, build_session_factory, dialect_insert

logger = logging.getLogger(__name__)


def url_matches(url: str, url_pattern: str) -> bool:
    """Substring match in either direction; an empty pattern never matches."""
    if not url_pattern or not url:
        return False
    return url_pattern in url or url in url_pattern


def _newest(candidates: list[PageBindings]) -> PageBindings | None:
    if not candidates:
        return None
    floor = datetime.min.replace(tzinfo=timezone.utc)
    return max(candidates, key=lambda b: b.updated_at or floor)


class BindingStore(abc.ABC):
    """Abstract binding store."""

    @abc.abstractmethod
    def load(self, url: str) -> PageBindings | None:
        """Return the newest bindings whose ``urlPattern`` matches *url*."""

    @abc.abstractmethod
    def _write(self, bindings: PageBindings) -> None: ...

    @abc.abstractmethod
    def get(self, binding_id: str) -> PageBindings | None: ...

    @abc.abstractmethod
    def list_all(self) -> list[PageBindings]: ...

    @abc.abstractmethod
    def delete(self, binding_id: str) -> bool: ...

    def validate(self, bindings: PageBindings) -> ValidationReport:
        return validate_bindings(bindings)

    def save(self, bindings: PageBindings) -> PageBindings:
        """Persist *bindings* keyed by ``id``, stamping ``updatedAt`` now.

        Raises:
            BindingInvalidError: The bindings fail structural validation.
        """
        report = self.validate(bindings)
        if not report.valid:
            raise BindingInvalidError(report.errors)
        stamped = bindings.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        self._write(stamped)
        logger.info("Saved bindings %s v%d for %s", stamped.id, stamped.version, stamped.url_pattern)
        return stamped

    def clear_for_url(self, url: str) -> int:
        """Delete every record matching *url*; return how many were removed."""
        removed = 0
        for bindings in self.list_all():
            if url_matches(url, bindings.url_pattern) and self.delete(bindings.id):
                removed += 1
        return removed

    def clear_all(self) -> int:
        removed = 0
        for bindings in self.list_all():
            if self.delete(bindings.id):
                removed += 1
        return removed


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryBindingStore(BindingStore):
    """Dict-backed store; contents live as long as the instance."""

    def __init__(self, initial: list[PageBindings] | None = None) -> None:
        self._records: dict[str, PageBindings] = {b.id: b for b in initial or []}

    def load(self, url: str) -> PageBindings | None:
        return _newest([b for b in self._records.values() if url_matches(url, b.url_pattern)])

    def _write(self, bindings: PageBindings) -> None:
        self._records[bindings.id] = bindings

    def get(self, binding_id: str) -> PageBindings | None:
        return self._records.get(binding_id)

    def list_all(self) -> list[PageBindings]:
        return list(self._records.values())

    def delete(self, binding_id: str) -> bool:
        return self._records.pop(binding_id, None) is not None


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


class SqlBindingStore(BindingStore):
    """Persist bindings in the ``page_bindings`` table.

    Args:
        db_path: Convenience path for a local SQLite file.  Mutually
            exclusive with *session_factory*.
        session_factory: Pre-configured ``sessionmaker`` (e.g. a shared
            test fixture).
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        session_factory: sessionmaker | None = None,
    ) -> None:
        if session_factory is not None:
            self._session_factory = session_factory
        else:
            self._session_factory = build_session_factory(db_path=db_path)

        # Ensure schema exists (auto-create for SQLite / local dev)
        with self._session_factory() as session:
            METADATA.create_all(session.connection())
            session.commit()

    @staticmethod
    def _from_row(row: Any) -> PageBindings | None:
        try:
            return PageBindings.model_validate(row.data)
        except ValidationError:
            logger.exception("Skipping unreadable bindings row %s", row.binding_id)
            return None

    def _rows(self, stmt: sa.Select) -> list[PageBindings]:
        with self._session_factory() as session:
            rows = session.execute(stmt).all()
        return [b for b in (self._from_row(r) for r in rows) if b is not None]

    def load(self, url: str) -> PageBindings | None:
        table = sql_schema.page_bindings
        candidates = [
            b
            for b in self._rows(sa.select(table).order_by(table.c.updated_at.desc()))
            if url_matches(url, b.url_pattern)
        ]
        return _newest(candidates)

    def _write(self, bindings: PageBindings) -> None:
        table = sql_schema.page_bindings
        values = {
            "binding_id": bindings.id,
            "url_pattern": bindings.url_pattern,
            "version": bindings.version,
            "data": bindings.to_json_dict(),
            "updated_at": bindings.updated_at,
            "created_at": bindings.updated_at,
        }
        with self._session_factory() as session:
            stmt = dialect_insert(session, table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.binding_id],
                set_={
                    "url_pattern": stmt.excluded.url_pattern,
                    "version": stmt.excluded.version,
                    "data": stmt.excluded.data,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            session.execute(stmt)
            session.commit()

    def get(self, binding_id: str) -> PageBindings | None:
        table = sql_schema.page_bindings
        found = self._rows(sa.select(table).where(table.c.binding_id == binding_id))
        return found[0] if found else None

    def list_all(self) -> list[PageBindings]:
        table = sql_schema.page_bindings
        return self._rows(sa.select(table).order_by(table.c.binding_id))

    def delete(self, binding_id: str) -> bool:
        table = sql_schema.page_bindings
        with self._session_factory() as session:
            result = session.execute(sa.delete(table).where(table.c.binding_id == binding_id))
            session.commit()
        return result.rowcount > 0
