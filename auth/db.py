"""
auth/db.py -- Engine construction and error translation shared by the auth stores.

Every store in auth/ is a Repository over SQLAlchemy Core with its own table
set. They share three concerns, kept here so the stores stay about their
entities:

  make_engine():     SQLite gets check_same_thread=False (request handlers run
                     in a thread pool) and WAL mode for concurrent reads;
                     in-memory SQLite gets SingletonThreadPool.
  storage_errors():  translates SQLAlchemyError into StorageError so callers
                     see one typed "could not consult storage" outcome and
                     can fail closed.
  now_iso():         UTC timestamps for display columns.

Security: all queries in the stores use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import SingletonThreadPool

from auth.errors import StorageError

logger = logging.getLogger("warden.auth.db")


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def is_memory_url(db_url: str) -> bool:
    """True for SQLite URLs that name an in-memory database."""
    if not db_url.startswith("sqlite"):
        return False
    return ":memory:" in db_url or "mode=memory" in db_url or db_url.split("://", 1)[-1] in ("", "/")


def make_engine(db_url: str) -> Engine:
    """Build an engine for db_url.

    An in-memory SQLite database lives only while a connection holds it open,
    so those URLs get SingletonThreadPool (one connection per thread, kept
    until dispose()). File and server URLs use SQLAlchemy's default pool.
    """
    connect_args: dict = {}
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    if is_memory_url(db_url):
        kwargs["poolclass"] = SingletonThreadPool
    engine = create_engine(db_url, connect_args=connect_args, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Re-raise any SQLAlchemy failure inside the block as StorageError.

    The original exception is chained (raise ... from) and logged here once;
    the StorageError message stays generic so it is safe to surface.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s: %s", operation, exc.__class__.__name__)
        raise StorageError() from exc


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
