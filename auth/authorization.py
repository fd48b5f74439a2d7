"""
auth/authorization.py -- Authorization Engine: RESTful rules first, RBAC fallback.

Decision procedure for authorize(user_id, resource, action):

  1. Resolve the principal's roles from the policy graph. No roles -> deny.
  2. Run an ordered chain of strategies. Each returns ALLOW, DENY or ABSTAIN;
     the first non-ABSTAIN verdict is the decision.
       RestfulPolicyStrategy   any restful rule of the principal's roles whose
                               path pattern matches resource and whose method
                               pattern matches action -> ALLOW, else ABSTAIN
       PermissionCodeStrategy  an enabled permission with exactly (url, method)
                               == (resource, action) must exist (else DENY),
                               and some role must hold a code rule for its
                               code -> ALLOW, else DENY
  3. A chain that ends with every strategy abstaining is a deny.

Every allow traces to an explicit rule; there is no implicit allow.

Path patterns are compared segment by segment. "*", ":name" and "{name}"
each match exactly one non-empty segment, so "/users/*" matches "/users/42"
but not "/users/42/orders". Method patterns are "*" (any verb) or a
case-insensitive regular expression that must match the whole verb.

Storage failures raise StorageError from authorize(). is_allowed() is the
fail-closed convenience wrapper that turns them into False.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from functools import lru_cache

from auth.errors import StorageError
from auth.models import RULE_CODE, RULE_RESTFUL, Decision, Permission, RoleRule
from auth.policy_store import PolicyStore

logger = logging.getLogger("warden.auth.authz")

ALLOW = "allow"
DENY = "deny"
ABSTAIN = "abstain"

_WILDCARD_SEGMENT = "*"

# ---------------------------------------------------------------------------
# Matchers
# ---------------------------------------------------------------------------


def _is_wildcard(segment: str) -> bool:
    return (
        segment == _WILDCARD_SEGMENT
        or (segment.startswith(":") and len(segment) > 1)
        or (segment.startswith("{") and segment.endswith("}") and len(segment) > 2)
    )


def key_match(path: str, pattern: str) -> bool:
    """Return True if path matches pattern, one segment per wildcard."""
    path_parts = path.split("/")
    pattern_parts = pattern.split("/")
    if len(path_parts) != len(pattern_parts):
        return False
    for actual, expected in zip(path_parts, pattern_parts):
        if _is_wildcard(expected):
            if not actual:
                return False
        elif actual != expected:
            return False
    return True


@lru_cache(maxsize=256)
def _compile_method_pattern(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


def method_match(method: str, pattern: str) -> bool:
    """Return True if the HTTP verb matches pattern ("*" or a full-match regex).

    An unparseable pattern matches nothing.
    """
    if pattern == _WILDCARD_SEGMENT:
        return True
    if not pattern:
        return False
    try:
        compiled = _compile_method_pattern(pattern)
    except re.error:
        logger.warning("Ignoring unparseable method pattern %r", pattern)
        return False
    return compiled.fullmatch(method) is not None


def validate_restful_entry(path: str, method: str) -> None:
    """Raise ValueError for a restful rule that could never be matched."""
    if not path.startswith("/"):
        raise ValueError(f"Path pattern must start with '/': {path!r}")
    if not method:
        raise ValueError("Method pattern must not be empty")
    if method != _WILDCARD_SEGMENT:
        try:
            _compile_method_pattern(method)
        except re.error as exc:
            raise ValueError(f"Invalid method pattern {method!r}: {exc}") from exc


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class Strategy:
    """One link in the decision chain.

    evaluate() returns (verdict, reason, matched_rules) where verdict is
    ALLOW, DENY or ABSTAIN.
    """

    name = "strategy"

    def __init__(self, policies: PolicyStore) -> None:
        self._policies = policies

    def evaluate(self, role_ids: list[int], resource: str, action: str) -> tuple[str, str, list[RoleRule]]:
        raise NotImplementedError


class RestfulPolicyStrategy(Strategy):
    name = "restful"

    def evaluate(self, role_ids, resource, action):
        rules = self._policies.rules_for_roles(role_ids, RULE_RESTFUL)
        matched = [
            r
            for r in rules
            if r.effect == ALLOW and key_match(resource, r.obj) and method_match(action, r.act)
        ]
        if matched:
            first = matched[0]
            return ALLOW, f"RESTful rule {first.act} {first.obj} granted to {first.subject}", matched
        return ABSTAIN, "no RESTful rule matched", []


class PermissionCodeStrategy(Strategy):
    name = "permission"

    def evaluate(self, role_ids, resource, action):
        permission = self._policies.find_enabled_permission(resource, action)
        if permission is None:
            return DENY, f"no enabled permission for {action.upper()} {resource}", []
        rules = self._policies.rules_for_roles(role_ids, RULE_CODE)
        matched = [r for r in rules if r.effect == ALLOW and r.obj == permission.code]
        if matched:
            return ALLOW, f"permission {permission.code!r} granted to {matched[0].subject}", matched
        return DENY, f"no role holds permission {permission.code!r}", []


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AuthorizationEngine:
    """Allow/deny decisions plus the graph-sync operations that feed them.

    Usage:
        engine = AuthorizationEngine(PolicyStore(url))
        engine.sync_user_roles(42, [1])
        engine.sync_role_restful_permissions(1, [("/users/*", "GET")])
        engine.authorize(42, "/users/42", "GET").allowed   # True
    """

    def __init__(self, policies: PolicyStore, strategies: list[Strategy] | None = None) -> None:
        self.policies = policies
        self.strategies = strategies or [RestfulPolicyStrategy(policies), PermissionCodeStrategy(policies)]

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def authorize(self, user_id: int, resource: str, action: str) -> Decision:
        """Decide whether user_id may perform action on resource.

        Raises StorageError if the policy graph cannot be consulted.
        """
        role_ids = self.policies.roles_for_user(user_id)
        if not role_ids:
            decision = Decision(allowed=False, reason="principal has no roles")
        else:
            decision = Decision(allowed=False, reason="no rule matched")
            for strategy in self.strategies:
                verdict, reason, matched = strategy.evaluate(role_ids, resource, action)
                if verdict == ABSTAIN:
                    continue
                decision = Decision(allowed=verdict == ALLOW, reason=reason, strategy=strategy.name, matched=matched)
                break

        if not decision.allowed:
            logger.warning("Denied user_id=%s %s %s: %s", user_id, action.upper(), resource, decision.reason)
        return decision

    def is_allowed(self, user_id: int, resource: str, action: str) -> bool:
        try:
            return self.authorize(user_id, resource, action).allowed
        except StorageError:
            logger.error("Policy store unavailable; denying user_id=%s %s %s", user_id, action.upper(), resource)
            return False

    # ------------------------------------------------------------------
    # Graph sync (replace-all, one transaction each)
    # ------------------------------------------------------------------

    def sync_user_roles(self, user_id: int, role_ids: Iterable[int]) -> list[int]:
        roles = self.policies.replace_user_roles(user_id, role_ids)
        logger.info("Synced roles for user_id=%s: %s", user_id, roles)
        return roles

    def sync_role_permissions(self, role_id: int, permission_ids: Iterable[int]) -> list[Permission]:
        """Replace the role's permission-code rules with the codes of permission_ids.

        Raises ValueError if any permission ID does not exist; nothing is
        changed in that case.
        """
        ids = list(dict.fromkeys(permission_ids))
        permissions = self.policies.get_permissions(ids)
        missing = set(ids) - {p.id for p in permissions}
        if missing:
            raise ValueError(f"Unknown permission IDs: {sorted(missing)}")
        self.policies.replace_role_rules(role_id, RULE_CODE, [(p.code, "*") for p in permissions])
        logger.info("Synced %d permission codes for role_id=%s", len(permissions), role_id)
        return permissions

    def sync_role_restful_permissions(self, role_id: int, entries: Iterable[tuple[str, str]]) -> list[RoleRule]:
        """Replace the role's RESTful rules with entries of (path_pattern, method_pattern)."""
        pairs = list(entries)
        for path, method in pairs:
            validate_restful_entry(path, method)
        rules = self.policies.replace_role_rules(role_id, RULE_RESTFUL, pairs)
        logger.info("Synced %d RESTful rules for role_id=%s", len(rules), role_id)
        return rules

    # ------------------------------------------------------------------
    # Introspection and integrity
    # ------------------------------------------------------------------

    def get_user_roles(self, user_id: int) -> list[int]:
        return self.policies.roles_for_user(user_id)

    def get_user_permissions(self, user_id: int) -> list[RoleRule]:
        """Every rule reachable from the principal through its roles."""
        return self.policies.rules_for_roles(self.policies.roles_for_user(user_id))

    def delete_role(self, role_id: int) -> None:
        self.policies.delete_role(role_id)
        logger.info("Deleted role_id=%s and its associations", role_id)

    def delete_permission(self, permission_id: int) -> bool:
        deleted = self.policies.delete_permission(permission_id)
        if deleted:
            logger.info("Deleted permission_id=%s and the code rules granting it", permission_id)
        return deleted
