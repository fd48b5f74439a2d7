"""
auth/login_log.py -- Login audit log: one row per login outcome and per logout.

Rows are append-only. Failed logins are recorded under the account name that
was tried; user_id stays NULL when that name did not resolve to a principal.
A logout whose token revocation failed is recorded with success=0, which is
the persisted form of that anomaly (the WARNING log line is the other).

Passwords and tokens are never written here.

Pattern: Repository (same shape as auth/revocation.py).
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, func, select
from sqlalchemy.engine import Engine

from auth.db import make_engine, now_iso, storage_errors
from auth.models import LoginLogEntry

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'warden.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_login_logs = Table(
    "login_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, index=True),  # NULL for unknown accounts
    Column("username", String(100), nullable=False, index=True),
    Column("origin", String(45)),
    Column("event", String(10), nullable=False),
    Column("success", Integer, nullable=False),  # boolean stored as 0/1
    Column("message", String(255), nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)


class LoginLogStore:
    """Repository for LoginLogEntry records.

    Usage:
        log = LoginLogStore(db_url)
        log.record(LoginLogEntry(username="alice", event="login", success=True, user_id=7))
        log.list_recent(user_id=7)
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def record(self, entry: LoginLogEntry) -> int:
        with storage_errors("record_login_log"), self.engine.connect() as conn:
            result = conn.execute(
                _login_logs.insert().values(
                    user_id=entry.user_id,
                    username=entry.username[:100],
                    origin=entry.origin,
                    event=entry.event,
                    success=1 if entry.success else 0,
                    message=entry.message[:255],
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_recent(
        self,
        user_id: int | None = None,
        username: str | None = None,
        limit: int = 100,
    ) -> list[LoginLogEntry]:
        """Return entries newest first, optionally filtered by principal or account name."""
        query = _login_logs.select()
        if user_id is not None:
            query = query.where(_login_logs.c.user_id == user_id)
        if username is not None:
            query = query.where(_login_logs.c.username == username)
        query = query.order_by(_login_logs.c.id.desc()).limit(limit)
        with storage_errors("list_login_logs"), self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count(self) -> int:
        with storage_errors("count_login_logs"), self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_login_logs)).scalar() or 0

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> LoginLogEntry:
    return LoginLogEntry(
        id=row.id,
        user_id=row.user_id,
        username=row.username,
        origin=row.origin,
        event=row.event,
        success=bool(row.success),
        message=row.message or "",
        created_at=row.created_at,
    )
