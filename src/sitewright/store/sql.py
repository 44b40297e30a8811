"""SQLAlchemy table definitions for sitewright binding persistence.

Bindings are stored whole as a JSON document, with the lookup columns
(``url_pattern``, ``version``, ``updated_at``) lifted out so the store
can match URLs and order by recency without decoding every row.
"""

from __future__ import annotations

from pathlib import Path

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
TIMESTAMP = sa.DateTime(timezone=True)

METADATA = sa.MetaData()

# ---------------------------------------------------------------------------
# page_bindings: one row per bindings id (latest version only)
# ---------------------------------------------------------------------------

page_bindings = sa.Table(
    "page_bindings",
    METADATA,
    sa.Column("binding_id", sa.String(length=255), primary_key=True),
    sa.Column("url_pattern", sa.Text(), nullable=False),
    sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
    sa.Column("data", JSON_TYPE, nullable=False),
    sa.Column("updated_at", TIMESTAMP, nullable=False),
    sa.Column("created_at", TIMESTAMP, nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
)
sa.Index("idx_page_bindings_url_pattern", page_bindings.c.url_pattern)
sa.Index("idx_page_bindings_updated_at", page_bindings.c.updated_at)


# ---------------------------------------------------------------------------
# Engine / session helpers
# ---------------------------------------------------------------------------


def build_engine(*, db_path: str | Path | None = None, echo: bool = False) -> sa.Engine:
    """Create a SQLAlchemy engine for the binding database.

    Args:
        db_path: Path of the SQLite file; ``":memory:"`` gives a private
            in-process database.  Defaults to
            ``get_settings().bindings.sqlite_path``.
        echo: When True, log all SQL statements.
    """
    if db_path is None:
        from sitewright.settings import get_settings

        db_path = get_settings().bindings.sqlite_path

    if str(db_path) == ":memory:":
        return sa.create_engine(
            "sqlite://",
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    resolved = Path(db_path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    url = f"sqlite:///{resolved.as_posix()}"
    return sa.create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def build_session_factory(*, db_path: str | Path | None = None) -> sessionmaker:
    """Return a ``sessionmaker`` bound to the binding database engine."""
    engine = build_engine(db_path=db_path)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


def dialect_insert(session: Session, table: sa.Table) -> sa.Insert:
    """Return a dialect-aware INSERT that supports ``on_conflict_do_update``.

    Picks the correct dialect (SQLite or PostgreSQL) based on the session's
    bound engine.
    """
    bind = session.get_bind()
    if bind.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert(table)
