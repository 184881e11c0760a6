"""Database connection and session management."""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from marketplace_ledger.config import get_settings
from marketplace_ledger.models import Base

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine


def get_engine(database_url: str | None = None) -> Engine:
    """Create database engine."""
    url = database_url or get_settings().database_url
    if url.startswith("sqlite"):
        return create_engine(url, echo=False)
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def init_db(database_url: str | None = None, create_schema: bool = False) -> tuple[Engine, sessionmaker[Session]]:
    """Initialize database engine and session factory.

    With ``create_schema`` the ledger tables are created if missing.
    """
    global _engine, _session_factory
    if _engine is None:
        _engine = get_engine(database_url)
        _session_factory = sessionmaker(
            _engine,
            expire_on_commit=False,
            autoflush=False,
        )
    if create_schema:
        Base.metadata.create_all(_engine)
    assert _session_factory is not None
    return _engine, _session_factory


def reset_db() -> None:
    """Dispose the global engine (used by the CLI and tests)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


@contextmanager
def session_scope() -> Iterator[Session]:
    """Get a database session that commits on success and rolls back on error."""
    _, factory = init_db()
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
