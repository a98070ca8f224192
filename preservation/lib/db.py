"""Database session management."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator, Type, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from preservation.lib.errors import RecordNotFoundError
from preservation.lib.models import Base

logger = logging.getLogger(__name__)

__all__ = ["create_session_factory", "get_record", "init_db", "session_scope"]

T = TypeVar("T")


def create_session_factory(database_url: str, **engine_options: Any) -> sessionmaker:
    """Create a session factory bound to a new engine.

    Example:
        >>> factory = create_session_factory("sqlite:///preservation.db")
        >>> with session_scope(factory) as session:
        ...     session.query(SourceObject).count()
    """
    engine = create_engine(database_url, pool_pre_ping=True, **engine_options)
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine_or_factory: Any) -> Engine:
    """Create all tables that don't exist yet."""
    engine = engine_or_factory.kw["bind"] if isinstance(engine_or_factory, sessionmaker) else engine_or_factory
    Base.metadata.create_all(engine)
    logger.info("Database schema ready at %s", engine.url.render_as_string(hide_password=True))
    return engine


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Provide a session that commits on success and rolls back on error.

    Usage:
        with session_scope(factory) as session:
            # use session
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_record(session: Session, model: Type[T], record_id: Any) -> T:
    """Fetch a record by primary key.

    Raises:
        RecordNotFoundError: If no row has that id
    """
    record = session.get(model, record_id)
    if record is None:
        raise RecordNotFoundError(model.__name__, record_id)
    return record
