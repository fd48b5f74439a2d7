"""
auth/store.py -- Credential Store: SQLAlchemy Core persistence for principals.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service and dependency code never touches SQL directly.

Pure data access: no password checks, no status rules. Those live in
auth/tokens.py and auth/service.py.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Every SQLAlchemy failure surfaces as auth.errors.StorageError.

DB path: warden.db at the project root unless a URL is injected.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import make_engine, now_iso, storage_errors
from auth.errors import ConflictError
from auth.models import PRINCIPAL_STATUSES, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'warden.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role_id", Integer),  # primary role, carried in token claims
    Column("status", String(16), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),  # ISO 8601 timestamp of last successful login
    Column("last_login_ip", String(45)),  # IPv6 max length
)

# Only these columns may be changed through update_user().
_MUTABLE_FIELDS = {"hashed_password", "role_id", "status"}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User (principal) records.

    Usage:
        store = UserStore()
        uid = store.create_user(User(username="alice", hashed_password=hash_password("secret"), role_id=1))
        user = store.get_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists."""
        with storage_errors("has_users"), self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with storage_errors("get_by_username"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with storage_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with storage_errors("list_users"), self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises ConflictError if the username already exists.
        """
        if user.status not in PRINCIPAL_STATUSES:
            raise ValueError(f"Unknown principal status: {user.status!r}")
        with storage_errors("create_user"), self.engine.connect() as conn:
            try:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        hashed_password=user.hashed_password,
                        role_id=user.role_id,
                        status=user.status,
                        created_at=now_iso(),
                    )
                )
            except IntegrityError as exc:
                raise ConflictError("Username already exists.") from exc
            conn.commit()
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: hashed_password, role_id, status. Unknown fields raise
        ValueError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "status" in fields and fields["status"] not in PRINCIPAL_STATUSES:
            raise ValueError(f"Unknown principal status: {fields['status']!r}")
        if not fields:
            return False
        with storage_errors("update_user"), self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_status(self, user_id: int, status: str) -> bool:
        """Set a principal to "active", "disabled" or "locked"."""
        return self.update_user(user_id, status=status)

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user record. Returns True if deleted, False if not found.

        Role links live in the policy graph; callers clear them with
        AuthorizationEngine.sync_user_roles(user_id, []).
        """
        with storage_errors("delete_user"), self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int, origin: str | None = None) -> None:
        """Stamp the current UTC time and client address of a successful login."""
        with storage_errors("update_last_login"), self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(last_login=now_iso(), last_login_ip=origin)
            )
            conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role_id=row.role_id,
        status=row.status,
        created_at=row.created_at,
        last_login=row.last_login,
        last_login_ip=row.last_login_ip,
    )
