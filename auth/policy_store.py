"""
auth/policy_store.py -- Persistence for the authorization graph.

Three tables:
  permissions   classical permission records: code + (url, method) + enabled flag
  role_rules    edges owned by a role, either
                  kind="code"    (obj = permission code, act = "*")
                  kind="restful" (obj = path pattern, act = method pattern)
  user_roles    principal -> role links

Graph integrity: there is no partial-update path. Every sync replaces the full
edge set for one owner (delete-all-then-insert) inside a single
engine.begin() transaction, so a failed insert rolls the delete back instead
of leaving a role with no rules. delete_role() and delete_permission() remove
the node together with every edge referencing it in the same way.

Pattern: Repository + Data Mapper (same as auth/store.py).
"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import make_engine, storage_errors
from auth.errors import ConflictError
from auth.models import RULE_CODE, RULE_RESTFUL, Permission, RoleRule

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'warden.db'}"

_RULE_KINDS = (RULE_CODE, RULE_RESTFUL)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(100), nullable=False, unique=True),
    Column("name", String(100), nullable=False, server_default=""),
    Column("url", String(255)),
    Column("method", String(10)),  # stored upper-case
    Column("enabled", Integer, nullable=False, server_default="1"),  # boolean stored as 0/1
)

_role_rules = Table(
    "role_rules",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, nullable=False, index=True),
    Column("kind", String(10), nullable=False),
    Column("obj", String(255), nullable=False),
    Column("act", String(100), nullable=False, server_default="*"),
    Column("effect", String(10), nullable=False, server_default="allow"),
    UniqueConstraint("role_id", "kind", "obj", "act", name="uq_role_rule"),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, primary_key=True),
    Column("role_id", Integer, primary_key=True),
)


def _unique(items: Iterable) -> list:
    """De-duplicate while keeping first-seen order."""
    seen: set = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class PolicyStore:
    """Repository for permissions, role rules and user-role links.

    Usage:
        policies = PolicyStore(db_url)
        pid = policies.create_permission(Permission(code="report:create", url="/reports", method="POST"))
        policies.replace_role_rules(1, "code", [("report:create", "*")])
        policies.replace_user_roles(42, [1])
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> int:
        """Insert a permission record. Raises ConflictError if the code is taken."""
        with storage_errors("create_permission"), self.engine.connect() as conn:
            try:
                result = conn.execute(
                    _permissions.insert().values(
                        code=permission.code,
                        name=permission.name,
                        url=permission.url,
                        method=permission.method.upper() if permission.method else None,
                        enabled=1 if permission.enabled else 0,
                    )
                )
            except IntegrityError as exc:
                raise ConflictError("Permission code already exists.") from exc
            conn.commit()
            return result.inserted_primary_key[0]

    def get_permission(self, permission_id: int) -> Permission | None:
        with storage_errors("get_permission"), self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.id == permission_id)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def get_permission_by_code(self, code: str) -> Permission | None:
        with storage_errors("get_permission_by_code"), self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.code == code)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def list_permissions(self) -> list[Permission]:
        with storage_errors("list_permissions"), self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().order_by(_permissions.c.id)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def find_enabled_permission(self, url: str, method: str) -> Permission | None:
        """Exact (url, method) lookup among enabled permissions."""
        with storage_errors("find_permission"), self.engine.connect() as conn:
            row = conn.execute(
                _permissions.select().where(
                    (_permissions.c.url == url)
                    & (_permissions.c.method == method.upper())
                    & (_permissions.c.enabled == 1)
                )
            ).first()
        return _row_to_permission(row) if row is not None else None

    def get_permissions(self, permission_ids: Iterable[int], enabled_only: bool = False) -> list[Permission]:
        ids = _unique(permission_ids)
        if not ids:
            return []
        condition = _permissions.c.id.in_(ids)
        if enabled_only:
            condition = condition & (_permissions.c.enabled == 1)
        with storage_errors("get_permissions"), self.engine.connect() as conn:
            rows = conn.execute(_permissions.select().where(condition).order_by(_permissions.c.id)).fetchall()
        return [_row_to_permission(r) for r in rows]

    def get_enabled_permissions(self, permission_ids: Iterable[int]) -> list[Permission]:
        return self.get_permissions(permission_ids, enabled_only=True)

    def set_permission_status(self, permission_id: int, enabled: bool) -> bool:
        with storage_errors("set_permission_status"), self.engine.connect() as conn:
            result = conn.execute(
                _permissions.update().where(_permissions.c.id == permission_id).values(enabled=1 if enabled else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_permission(self, permission_id: int) -> bool:
        """Delete a permission and every code rule that grants its code."""
        with storage_errors("delete_permission"), self.engine.begin() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.id == permission_id)).fetchone()
            if row is None:
                return False
            conn.execute(
                _role_rules.delete().where((_role_rules.c.kind == RULE_CODE) & (_role_rules.c.obj == row.code))
            )
            conn.execute(_permissions.delete().where(_permissions.c.id == permission_id))
        return True

    # ------------------------------------------------------------------
    # User-role links
    # ------------------------------------------------------------------

    def roles_for_user(self, user_id: int) -> list[int]:
        with storage_errors("roles_for_user"), self.engine.connect() as conn:
            rows = conn.execute(
                _user_roles.select().where(_user_roles.c.user_id == user_id).order_by(_user_roles.c.role_id)
            ).fetchall()
        return [r.role_id for r in rows]

    def users_for_role(self, role_id: int) -> list[int]:
        with storage_errors("users_for_role"), self.engine.connect() as conn:
            rows = conn.execute(
                _user_roles.select().where(_user_roles.c.role_id == role_id).order_by(_user_roles.c.user_id)
            ).fetchall()
        return [r.user_id for r in rows]

    def replace_user_roles(self, user_id: int, role_ids: Iterable[int]) -> list[int]:
        """Replace a principal's full role set atomically. Returns the stored set."""
        roles = _unique(role_ids)
        with storage_errors("replace_user_roles"), self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            if roles:
                conn.execute(_user_roles.insert(), [{"user_id": user_id, "role_id": r} for r in roles])
        return roles

    # ------------------------------------------------------------------
    # Role rules
    # ------------------------------------------------------------------

    def rules_for_roles(self, role_ids: Iterable[int], kind: str | None = None) -> list[RoleRule]:
        roles = _unique(role_ids)
        if not roles:
            return []
        condition = _role_rules.c.role_id.in_(roles)
        if kind is not None:
            condition = condition & (_role_rules.c.kind == kind)
        with storage_errors("rules_for_roles"), self.engine.connect() as conn:
            rows = conn.execute(_role_rules.select().where(condition).order_by(_role_rules.c.id)).fetchall()
        return [_row_to_rule(r) for r in rows]

    def replace_role_rules(self, role_id: int, kind: str, rules: Iterable[tuple[str, str]]) -> list[RoleRule]:
        """Replace every rule of one kind owned by role_id, atomically.

        Rules of the other kind are left alone, so syncing permission codes
        never wipes a role's RESTful rules and vice versa.
        """
        if kind not in _RULE_KINDS:
            raise ValueError(f"Unknown rule kind: {kind!r}")
        edges = [RoleRule(role_id=role_id, kind=kind, obj=obj, act=act) for obj, act in _unique(rules)]
        with storage_errors("replace_role_rules"), self.engine.begin() as conn:
            conn.execute(_role_rules.delete().where((_role_rules.c.role_id == role_id) & (_role_rules.c.kind == kind)))
            if edges:
                conn.execute(
                    _role_rules.insert(),
                    [{"role_id": e.role_id, "kind": e.kind, "obj": e.obj, "act": e.act, "effect": e.effect} for e in edges],
                )
        return edges

    def delete_role(self, role_id: int) -> None:
        """Remove every rule owned by the role and every user link pointing at it."""
        with storage_errors("delete_role"), self.engine.begin() as conn:
            conn.execute(_role_rules.delete().where(_role_rules.c.role_id == role_id))
            conn.execute(_user_roles.delete().where(_user_roles.c.role_id == role_id))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        code=row.code,
        name=row.name,
        url=row.url,
        method=row.method,
        enabled=bool(row.enabled),
    )


def _row_to_rule(row) -> RoleRule:
    return RoleRule(
        id=row.id,
        role_id=row.role_id,
        kind=row.kind,
        obj=row.obj,
        act=row.act,
        effect=row.effect,
    )
