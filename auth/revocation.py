"""
auth/revocation.py -- Revocation Store: tokens rejected before their natural expiry.

Each entry is keyed by HMAC-SHA256(SECRET_KEY, token) (TokenManager.hash_token)
so the table never holds a usable bearer credential. The entry stores the
token's own exp claim; once that passes the token is dead anyway and sweep()
may delete the entry.

is_revoked() sits on the request path and always reads committed state; it
does not depend on sweep timing. Storage failures raise StorageError, which
callers must treat as "revoked" (fail-closed).

Pattern: Repository (same shape as auth/store.py). The TokenManager is injected
so revoke() can read the original expiry from the token itself.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import make_engine, now_iso, storage_errors
from auth.models import RevocationEntry
from auth.tokens import TokenManager

logger = logging.getLogger("warden.auth.revocation")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'warden.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_revocations = Table(
    "token_revocations",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, nullable=False, index=True),
    Column("username", String(255), nullable=False),
    Column("reason", String(100)),
    Column("expires_at", Float, nullable=False, index=True),  # token's own exp, epoch seconds
    Column("created_at", String(32), nullable=False),
)


class RevocationStore:
    """Repository for RevocationEntry records.

    Usage:
        revocations = RevocationStore(tokens, db_url)
        revocations.revoke(token, user.id, user.username, "logout")
        revocations.is_revoked(token)   # True
        revocations.sweep()             # periodic, off the request path
    """

    def __init__(
        self,
        tokens: TokenManager,
        db_url: str = _DEFAULT_DB_URL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tokens = tokens
        self._clock = clock
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def revoke(self, token: str, user_id: int, username: str, reason: str = "") -> bool:
        """Record token as revoked until its original expiry.

        Returns True if a new entry was written, False if the token was
        already revoked or has already expired naturally (nothing to do).
        Raises an InvalidTokenError subclass for a token that is not
        authentic, and StorageError if the write fails.
        """
        expires_at = self._tokens.read_expiry(token)
        if expires_at <= self._clock():
            return False
        token_hash = self._tokens.hash_token(token)
        with storage_errors("revoke"), self.engine.connect() as conn:
            try:
                conn.execute(
                    _revocations.insert().values(
                        token_hash=token_hash,
                        user_id=user_id,
                        username=username,
                        reason=reason[:100],
                        expires_at=expires_at,
                        created_at=now_iso(),
                    )
                )
                conn.commit()
            except IntegrityError:
                # Already revoked -- revocation is idempotent.
                conn.rollback()
                return False
        logger.info(
            "Token revoked for user_id=%s until %s (%s)",
            user_id,
            datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat(),
            reason or "no reason",
        )
        return True

    def is_revoked(self, token: str) -> bool:
        """Return True if a matching entry exists. O(1) via the UNIQUE hash index."""
        token_hash = self._tokens.hash_token(token)
        with storage_errors("is_revoked"), self.engine.connect() as conn:
            found = conn.execute(
                select(_revocations.c.id).where(_revocations.c.token_hash == token_hash)
            ).first()
        return found is not None

    def sweep(self) -> int:
        """Delete entries whose original token expiry has passed. Returns rows removed."""
        with storage_errors("sweep"), self.engine.connect() as conn:
            result = conn.execute(_revocations.delete().where(_revocations.c.expires_at < self._clock()))
            conn.commit()
        return result.rowcount

    def count(self) -> int:
        with storage_errors("count_revocations"), self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_revocations)).scalar() or 0

    def list_for_user(self, user_id: int) -> list[RevocationEntry]:
        """Return a principal's revocation entries, newest first."""
        with storage_errors("list_revocations"), self.engine.connect() as conn:
            rows = conn.execute(
                _revocations.select()
                .where(_revocations.c.user_id == user_id)
                .order_by(_revocations.c.created_at.desc())
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def delete(self, entry_id: int) -> bool:
        """Remove a single entry, making its token usable again if still unexpired."""
        with storage_errors("delete_revocation"), self.engine.connect() as conn:
            result = conn.execute(_revocations.delete().where(_revocations.c.id == entry_id))
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> RevocationEntry:
    return RevocationEntry(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        username=row.username,
        reason=row.reason or "",
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
