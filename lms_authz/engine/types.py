"""
Value objects and records shared by the engine.

Access-right keys and role names are parsed at the boundary into ``str``
subclasses so that typos fail at construction instead of silently never
matching during evaluation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
import re
from typing import Any, Iterable

from lms_authz.errors import InvalidIdentifier

# ---- Identifiers ---------------------------------------------------------------------


_SEGMENT = r"[a-z][a-z0-9-]*"
_KEY_RE = re.compile(rf"^{_SEGMENT}:{_SEGMENT}(?::{_SEGMENT})?$")
_WILDCARD_RE = re.compile(rf"^{_SEGMENT}(?::{_SEGMENT})?:\*$")
_ROLE_NAME_RE = re.compile(r"^[a-z][a-z0-9]*(?:-[a-z0-9]+)*$")


class AccessRightKey(str):
    """
    Validated access-right key.

    Accepted forms:
        content:courses:read      exact (domain:resource:action)
        courses:read              exact, short form (domain:action)
        content:*                 wildcard over a domain
        content:courses:*         wildcard over a resource
    """

    __slots__ = ()

    def __new__(cls, value: str) -> AccessRightKey:
        if isinstance(value, AccessRightKey):
            return value
        normalized = str(value).strip().lower()
        if not (_KEY_RE.match(normalized) or _WILDCARD_RE.match(normalized)):
            raise InvalidIdentifier(f"invalid access right key {value!r}", key=str(value))
        return super().__new__(cls, normalized)

    @property
    def domain(self) -> str:
        return self.split(":", 1)[0]

    @property
    def is_wildcard(self) -> bool:
        return self.endswith(":*")

    @property
    def prefix(self) -> str:
        """For a wildcard, the literal prefix it matches (``content:``)."""
        return self[:-1] if self.is_wildcard else str(self)

    def covers(self, other: str) -> bool:
        """True if this key grants ``other`` (exact match or wildcard prefix)."""
        if self == other:
            return True
        return self.is_wildcard and other.startswith(self.prefix)


class RoleName(str):
    """Validated, lowercase-hyphenated role name."""

    __slots__ = ()

    def __new__(cls, value: str) -> RoleName:
        if isinstance(value, RoleName):
            return value
        normalized = str(value).strip().lower()
        if not _ROLE_NAME_RE.match(normalized):
            raise InvalidIdentifier(f"invalid role name {value!r}", role_name=str(value))
        return super().__new__(cls, normalized)


def parse_keys(values: Iterable[str]) -> frozenset[AccessRightKey]:
    return frozenset(AccessRightKey(v) for v in values)


def parse_role_names(values: Iterable[str]) -> frozenset[RoleName]:
    return frozenset(RoleName(v) for v in values)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime) -> datetime:
    """Naive datetimes coming from storage are treated as UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


# ---- Records -------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessRight:
    """Catalog entry. Immutable once seeded."""

    key: AccessRightKey
    domain: str
    sensitivity_level: int = 0
    sensitive_category: str | None = None
    is_wildcardable: bool = True
    description: str = ""

    @property
    def is_sensitive(self) -> bool:
        return self.sensitivity_level > 0


class RoleScope(str, Enum):
    BUILT_IN = "built-in"
    CUSTOM = "custom"


@dataclass(frozen=True)
class RoleDefinition:
    """Role with its direct grants and optional parent link."""

    name: RoleName
    level: int
    granted_rights: frozenset[AccessRightKey] = frozenset()
    parent_role: RoleName | None = None
    scope_kind: RoleScope = RoleScope.CUSTOM
    department_id: str | None = None
    is_active: bool = True
    display_name: str | None = None
    description: str | None = None

    @property
    def is_built_in(self) -> bool:
        return self.scope_kind is RoleScope.BUILT_IN


@dataclass(frozen=True)
class Department:
    id: str
    parent_department_id: str | None = None
    require_explicit_membership: bool = False
    name: str | None = None


@dataclass(frozen=True)
class DepartmentMembership:
    """Stored membership as loaded from the persistence collaborator."""

    department_id: str
    roles: frozenset[RoleName]
    is_primary: bool = False
    expires_at: datetime | None = None
    is_active: bool = True

    def is_current(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.expires_at is not None and as_aware(self.expires_at) <= now:
            return False
        return True


@dataclass(frozen=True)
class EffectiveMembership:
    """Derived membership after cascading down the department tree."""

    department_id: str
    roles: frozenset[RoleName]
    is_direct: bool
    inherited_from: str | None = None
    is_primary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "department_id": self.department_id,
            "roles": sorted(self.roles),
            "is_direct": self.is_direct,
            "inherited_from": self.inherited_from,
            "is_primary": self.is_primary,
        }


@dataclass(frozen=True)
class RightDecision:
    """One explain-trail entry per requested right."""

    right: str
    granted: bool
    role: RoleName | None = None
    matched_by: AccessRightKey | None = None
    department_id: str | None = None


@dataclass(frozen=True)
class EvaluationResult:
    """
    granted_rights / denied_rights and the trail echo the caller's own strings.
    Requests differing only by case or surrounding whitespace are evaluated once,
    under the first spelling given; matched_by is always the normalized key.
    """

    granted: bool
    granted_rights: tuple[str, ...]
    denied_rights: tuple[str, ...]
    trail: tuple[RightDecision, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable dict."""
        return {
            "granted": self.granted,
            "granted_rights": list(self.granted_rights),
            "denied_rights": list(self.denied_rights),
            "trail": [
                {
                    "right": d.right,
                    "granted": d.granted,
                    "role": d.role,
                    "matched_by": d.matched_by,
                    "department_id": d.department_id,
                }
                for d in self.trail
            ],
        }


class SessionMode(str, Enum):
    NORMAL = "normal"
    ESCALATED = "escalated"


@dataclass(frozen=True)
class Session:
    """
    Immutable per-user session state. Transitions return a new instance.

    ``ttl`` is advisory: the token collaborator enforces it.
    """

    user_id: str
    mode: SessionMode = SessionMode.NORMAL
    escalated_roles: frozenset[RoleName] = frozenset()
    active_department_id: str | None = None
    available_rights: frozenset[AccessRightKey] = frozenset()
    ttl: timedelta = timedelta(minutes=60)
    issued_at: datetime = field(default_factory=utcnow)

    @property
    def is_escalated(self) -> bool:
        return self.mode is SessionMode.ESCALATED


@dataclass(frozen=True)
class RightsDiff:
    added: frozenset[AccessRightKey]
    removed: frozenset[AccessRightKey]

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


@dataclass(frozen=True)
class RoleDeletion:
    """Outcome of a role delete; the caller moves holders to ``reassign_to``."""

    role_name: RoleName
    holder_count: int
    reassign_to: RoleName | None = None
