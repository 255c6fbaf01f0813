"""
Role Definition Store.

Holds built-in and custom role definitions, resolves inheritance (parent_role)
into effective rights, and guards every write:

- unknown access rights, unknown parents and inheritance cycles are rejected
  when a role is loaded or saved, never during evaluation;
- built-in roles are immutable;
- a requester cannot create or re-parent a role under a parent whose level is
  not strictly below their own;
- a role still held by users cannot be deleted without a reassignment target.

Effective rights are memoised per role. The memo is versioned: every write
bumps the version and readers re-derive on mismatch, so read paths need no lock.
"""

from __future__ import annotations

from dataclasses import replace
import logging
import threading
from typing import Any, Iterable, Mapping

from lms_authz.errors import (
    AccessControlError,
    CyclicRoleInheritance,
    ImmutableRole,
    InsufficientPrivilege,
    InvalidRoleDefinition,
    RoleAlreadyExists,
    RoleHasActiveHolders,
    RoleHasDependents,
    RoleNotFound,
    StoreUnavailable,
)

from .catalog import AccessRightCatalog
from .ports import RoleBackend
from .types import AccessRightKey, RoleDefinition, RoleDeletion, RoleName, RoleScope, parse_keys

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {"level", "granted_rights", "parent_role", "department_id", "is_active", "display_name", "description"}
)


def _normalize(role: RoleDefinition) -> RoleDefinition:
    return replace(
        role,
        name=RoleName(role.name),
        parent_role=RoleName(role.parent_role) if role.parent_role else None,
        granted_rights=parse_keys(role.granted_rights),
        scope_kind=RoleScope(role.scope_kind),
    )


class RoleDefinitionStore:
    def __init__(
        self,
        catalog: AccessRightCatalog,
        roles: Iterable[RoleDefinition],
        *,
        backend: RoleBackend | None = None,
        custom_level_range: tuple[int, int] = (10, 89),
        max_depth: int = 32,
    ) -> None:
        self._catalog = catalog
        self._backend = backend
        self._min_level, self._max_level = custom_level_range
        self._max_depth = max_depth
        self._lock = threading.RLock()
        self._version = 0
        self._memo: dict[RoleName, tuple[int, frozenset[AccessRightKey]]] = {}

        by_name: dict[RoleName, RoleDefinition] = {}
        for raw in roles:
            role = _normalize(raw)
            if role.name in by_name:
                raise RoleAlreadyExists(role.name, built_in=role.is_built_in)
            by_name[role.name] = role

        for role in by_name.values():
            catalog.validate_keys(role.granted_rights, role_name=role.name)
            if role.parent_role and role.parent_role not in by_name:
                raise InvalidRoleDefinition(
                    f"role {role.name!r} inherits from unknown role {role.parent_role!r}",
                    role_name=role.name,
                    parent_role=role.parent_role,
                )
        for name in by_name:
            self._parent_chain(name, by_name)

        self._roles: Mapping[RoleName, RoleDefinition] = by_name
        logger.debug("Role definition store loaded %d roles", len(by_name))

    # ---- Reads ----------------------------------------------------------------------

    @property
    def version(self) -> int:
        return self._version

    def __contains__(self, name: object) -> bool:
        return name in self._roles

    def roles(self) -> list[RoleDefinition]:
        return sorted(self._roles.values(), key=lambda r: (-r.level, r.name))

    def get(self, name: str) -> RoleDefinition:
        role = self._roles.get(RoleName(name))
        if role is None:
            raise RoleNotFound(str(name))
        return role

    def find(self, name: str) -> RoleDefinition | None:
        """Like get(), but returns None for unknown roles."""
        return self._roles.get(name)  # type: ignore[call-overload]

    def effective_rights(self, name: str) -> frozenset[AccessRightKey]:
        """granted_rights of the role unioned with those of every ancestor."""

        role_name = RoleName(name)
        # Read the version before the role map; writers publish the map first.
        version = self._version
        roles = self._roles
        cached = self._memo.get(role_name)
        if cached is not None and cached[0] == version:
            return cached[1]
        if role_name not in roles:
            raise RoleNotFound(role_name)

        rights: set[AccessRightKey] = set()
        for link in self._parent_chain(role_name, roles):
            rights.update(roles[link].granted_rights)
        result = frozenset(rights)
        self._memo[role_name] = (version, result)
        return result

    def is_admin_capable(self, name: str, threshold: int) -> bool:
        role = self.get(name)
        if role.level >= threshold:
            return True
        return any(key.domain == "system" for key in self.effective_rights(role.name))

    def _parent_chain(self, name: RoleName, roles: Mapping[RoleName, RoleDefinition]) -> list[RoleName]:
        """Role followed by its ancestors, nearest first. Raises on cycles."""

        chain = [name]
        seen = {name}
        current = roles[name]
        while current.parent_role is not None:
            parent = current.parent_role
            if parent in seen:
                raise CyclicRoleInheritance(name, chain + [parent])
            if parent not in roles:
                raise InvalidRoleDefinition(
                    f"role {current.name!r} inherits from unknown role {parent!r}",
                    role_name=current.name,
                    parent_role=parent,
                )
            if len(chain) > self._max_depth:
                raise InvalidRoleDefinition(
                    f"inheritance chain of {name!r} exceeds {self._max_depth} levels",
                    role_name=name,
                )
            chain.append(parent)
            seen.add(parent)
            current = roles[parent]
        return chain

    # ---- Writes ---------------------------------------------------------------------

    def create(self, role: RoleDefinition, requester_level: int) -> RoleDefinition:
        with self._lock:
            candidate = _normalize(replace(role, scope_kind=RoleScope.CUSTOM))
            existing = self._roles.get(candidate.name)
            if existing is not None:
                logger.warning("Role create rejected: %r already exists", candidate.name)
                raise RoleAlreadyExists(candidate.name, built_in=existing.is_built_in)

            roles = {**self._roles, candidate.name: candidate}
            self._validate_write(candidate, roles, requester_level)
            self._call_backend("save_role_definition", candidate, role_name=candidate.name)
            self._publish(roles)
            logger.info("Custom role created: %s (level=%d parent=%s)", candidate.name, candidate.level, candidate.parent_role)
            return candidate

    def update(self, name: str, requester_level: int, **changes: Any) -> RoleDefinition:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidRoleDefinition(f"fields {sorted(unknown)} cannot be updated", role_name=str(name))

        with self._lock:
            existing = self.get(name)
            if existing.is_built_in:
                logger.warning("Role update rejected: %r is built-in", existing.name)
                raise ImmutableRole(existing.name)

            candidate = _normalize(replace(existing, **changes))
            roles = {**self._roles, candidate.name: candidate}
            self._validate_write(candidate, roles, requester_level)
            self._call_backend("save_role_definition", candidate, role_name=candidate.name)
            self._publish(roles)
            logger.info("Role updated: %s fields=%s", candidate.name, sorted(changes))
            return candidate

    def delete(self, name: str, reassign_to: str | None = None) -> RoleDeletion:
        with self._lock:
            role = self.get(name)
            if role.is_built_in:
                logger.warning("Role delete rejected: %r is built-in", role.name)
                raise ImmutableRole(role.name)

            dependents = [r.name for r in self._roles.values() if r.parent_role == role.name]
            if dependents:
                raise RoleHasDependents(role.name, dependents)

            target: RoleName | None = None
            if reassign_to is not None:
                target = RoleName(reassign_to)
                if target == role.name:
                    raise InvalidRoleDefinition("a role cannot be reassigned to itself", role_name=role.name)
                target_role = self.get(target)
                if not target_role.is_active:
                    raise InvalidRoleDefinition(
                        f"reassignment target {target!r} is inactive",
                        role_name=role.name,
                        reassign_to=target,
                    )

            holders = self._call_backend("count_holders", role.name, role_name=role.name) or 0
            if holders and target is None:
                logger.warning("Role delete rejected: %r has %d holders", role.name, holders)
                raise RoleHasActiveHolders(role.name, holders)

            self._call_backend("delete_role_definition", role.name, target, role_name=role.name)
            self._publish({k: v for k, v in self._roles.items() if k != role.name})
            logger.info("Role deleted: %s holders=%d reassign_to=%s", role.name, holders, target)
            return RoleDeletion(role_name=role.name, holder_count=holders, reassign_to=target)

    # ---- Helpers --------------------------------------------------------------------

    def _validate_write(
        self,
        candidate: RoleDefinition,
        roles: Mapping[RoleName, RoleDefinition],
        requester_level: int,
    ) -> None:
        if not self._min_level <= candidate.level <= self._max_level:
            raise InvalidRoleDefinition(
                f"custom role level {candidate.level} outside {self._min_level}..{self._max_level}",
                role_name=candidate.name,
                level=candidate.level,
            )
        self._catalog.validate_keys(candidate.granted_rights, role_name=candidate.name)

        if candidate.parent_role is not None:
            parent = roles.get(candidate.parent_role)
            if parent is None:
                raise RoleNotFound(candidate.parent_role)
            if parent.level >= requester_level:
                logger.warning(
                    "Role write rejected: parent %r level %d >= requester level %d",
                    parent.name,
                    parent.level,
                    requester_level,
                )
                raise InsufficientPrivilege(
                    f"cannot inherit from {parent.name!r} (level {parent.level}) at requester level {requester_level}",
                    role_name=candidate.name,
                    parent_role=parent.name,
                    requester_level=requester_level,
                )

        self._parent_chain(candidate.name, roles)

    def _publish(self, roles: Mapping[RoleName, RoleDefinition]) -> None:
        # Order matters for lock-free readers: map first, then version.
        self._roles = roles
        self._version += 1

    def _call_backend(self, operation: str, *args: Any, role_name: str | None = None) -> Any:
        if self._backend is None:
            return None
        try:
            return getattr(self._backend, operation)(*args)
        except AccessControlError:
            raise
        except Exception as exc:
            logger.error("Role backend %s failed for role=%s", operation, role_name)
            raise StoreUnavailable(operation, role_name=role_name) from exc
