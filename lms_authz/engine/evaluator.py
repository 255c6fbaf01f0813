"""
Permission Evaluator.

Answers "does user U hold right R (optionally within department D)?" over a
snapshot of the user's memberships:

1. Resolve effective memberships. With a department, take that department's
   roles only; otherwise the union across departments. Escalated sessions
   add their escalated roles to either, as long as a current membership still
   carries them. Memberships in the master department only count while
   escalated.
2. Union effective_rights() of every active role held.
3. Expand wildcards via the catalog.
4. A requested key is granted if it is in the expanded set or covered by a
   held wildcard.
5. OR semantics by default, AND with require_all. An empty request is never
   granted.

Denial is a normal result and never raises. Role level plays no part here.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import logging
from typing import Iterable, Mapping, Sequence

from lms_authz.errors import InvalidIdentifier

from .catalog import AccessRightCatalog
from .membership import MembershipResolver
from .roles import RoleDefinitionStore
from .types import (
    AccessRightKey,
    DepartmentMembership,
    EffectiveMembership,
    EvaluationResult,
    RightDecision,
    RoleName,
    Session,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Grant:
    role: RoleName
    department_id: str | None


class PermissionEvaluator:
    def __init__(
        self,
        catalog: AccessRightCatalog,
        roles: RoleDefinitionStore,
        resolver: MembershipResolver,
        *,
        master_department_id: str | None = None,
    ) -> None:
        self._catalog = catalog
        self._roles = roles
        self._resolver = resolver
        self._master_department_id = master_department_id

    @property
    def resolver(self) -> MembershipResolver:
        return self._resolver

    # ---- Role resolution ------------------------------------------------------------

    def role_applies(self, role_name: RoleName, department_id: str) -> bool:
        """Department-scoped custom roles only apply within their department subtree."""

        role = self._roles.find(role_name)
        if role is None or not role.is_active:
            return False
        if role.department_id is None or role.department_id == department_id:
            return True
        hierarchy = self._resolver.hierarchy
        if department_id not in hierarchy or role.department_id not in hierarchy:
            return False
        return hierarchy.is_descendant(department_id, role.department_id)

    def resolve_roles(
        self,
        effective: Sequence[EffectiveMembership],
        *,
        department_id: str | None = None,
        session: Session | None = None,
    ) -> dict[RoleName, str | None]:
        """
        Roles in play for this evaluation, mapped to the department they came from.

        Escalated roles apply in every department, but only while the user still
        holds them through a membership where the role's scope applies. The
        session's own list is never trusted on its own.
        """

        escalated = session is not None and session.is_escalated
        escalated_roles = session.escalated_roles if escalated else frozenset()  # type: ignore[union-attr]
        resolved: dict[RoleName, str | None] = {}
        for entry in effective:
            if entry.department_id == self._master_department_id and not escalated:
                continue
            in_scope = department_id is None or entry.department_id == department_id
            for role_name in sorted(entry.roles):
                if role_name in resolved:
                    continue
                if not in_scope and role_name not in escalated_roles:
                    continue
                if self.role_applies(role_name, entry.department_id):
                    resolved[role_name] = entry.department_id
        return resolved

    def _collect(self, roles: Mapping[RoleName, str | None]) -> dict[AccessRightKey, _Grant]:
        available: dict[AccessRightKey, _Grant] = {}
        for role_name, dept in roles.items():
            for key in sorted(self._roles.effective_rights(role_name)):
                available.setdefault(key, _Grant(role=role_name, department_id=dept))
        return available

    def available_rights(
        self,
        user_id: str,
        memberships: Sequence[DepartmentMembership],
        *,
        department_id: str | None = None,
        session: Session | None = None,
        now: datetime | None = None,
    ) -> frozenset[AccessRightKey]:
        """Flat rights set (wildcards kept and expanded) for the given context."""

        effective = self._resolver.resolve(user_id, memberships, now=now)
        roles = self.resolve_roles(effective, department_id=department_id, session=session)
        return self._expand(self._collect(roles).keys())

    def _expand(self, keys: Iterable[AccessRightKey]) -> frozenset[AccessRightKey]:
        expanded: set[AccessRightKey] = set()
        for key in keys:
            expanded.add(key)
            if key.is_wildcard:
                expanded.update(self._catalog.expand_wildcard(key))
        return frozenset(expanded)

    # ---- Decision -------------------------------------------------------------------

    def has_right(
        self,
        user_id: str,
        memberships: Sequence[DepartmentMembership],
        requested: Iterable[str],
        *,
        require_all: bool = False,
        department_id: str | None = None,
        session: Session | None = None,
        now: datetime | None = None,
    ) -> EvaluationResult:
        # Normalized key -> first spelling the caller used.
        requested_raw: dict[str, str] = {}
        for r in requested:
            requested_raw.setdefault(str(r).strip().lower(), str(r))
        effective = self._resolver.resolve(user_id, memberships, now=now)
        roles = self.resolve_roles(effective, department_id=department_id, session=session)
        available = self._collect(roles)

        wildcard_sources: dict[AccessRightKey, _Grant] = {}
        for key, grant in available.items():
            if key.is_wildcard:
                for expanded in self._catalog.expand_wildcard(key):
                    wildcard_sources.setdefault(expanded, grant)
        wildcards = sorted(k for k in available if k.is_wildcard)

        trail: list[RightDecision] = []
        for raw in requested_raw.values():
            try:
                key = AccessRightKey(raw)
            except InvalidIdentifier:
                logger.warning("Malformed requested right denied user=%s right=%r", user_id, raw)
                trail.append(RightDecision(right=raw, granted=False))
                continue
            trail.append(replace(self._decide(key, available, wildcard_sources, wildcards), right=raw))

        granted = tuple(d.right for d in trail if d.granted)
        denied = tuple(d.right for d in trail if not d.granted)
        if not trail:
            decision = False
        elif require_all:
            decision = not denied
        else:
            decision = bool(granted)

        logger.debug(
            "Evaluated user=%s department=%s mode=%s require_all=%s granted=%s denied=%s",
            user_id,
            department_id,
            session.mode.value if session else "normal",
            require_all,
            list(granted),
            list(denied),
        )
        return EvaluationResult(granted=decision, granted_rights=granted, denied_rights=denied, trail=tuple(trail))

    def _decide(
        self,
        key: AccessRightKey,
        available: Mapping[AccessRightKey, _Grant],
        wildcard_sources: Mapping[AccessRightKey, _Grant],
        wildcards: Sequence[AccessRightKey],
    ) -> RightDecision:
        grant = available.get(key)
        if grant is not None:
            return RightDecision(key, True, role=grant.role, matched_by=key, department_id=grant.department_id)
        if key in self._catalog:
            # Catalogued keys are only reachable through wildcard expansion, which
            # honours is_wildcardable.
            grant = wildcard_sources.get(key)
            if grant is None:
                return RightDecision(key, False)
            pattern = next((w for w in wildcards if w.covers(key)), None)
            return RightDecision(key, True, role=grant.role, matched_by=pattern, department_id=grant.department_id)
        for pattern in wildcards:
            if pattern.covers(key):
                g = available[pattern]
                return RightDecision(key, True, role=g.role, matched_by=pattern, department_id=g.department_id)
        return RightDecision(key, False)
