"""
Error taxonomy for the access-rights engine.

Every error carries a machine-readable ``code``, an HTTP-ish ``status_code``
(used by the FastAPI adapter) and a ``context`` dict with the identifiers a
caller needs to log or display the failure without re-querying.

Denial of a requested right is NOT an error; see PermissionEvaluator.
"""

from __future__ import annotations

from typing import Any


class AccessControlError(Exception):
    """Base class for all engine errors."""

    code = "ACCESS_CONTROL_ERROR"
    status_code = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": dict(self.context)}


class InvalidIdentifier(AccessControlError, ValueError):
    """An access-right key or role name failed boundary validation."""

    code = "INVALID_IDENTIFIER"
    status_code = 400


# ---- Structural / configuration errors (raised at load or write time) ---------------


class CatalogConfigError(AccessControlError, ValueError):
    code = "CATALOG_CONFIG_ERROR"


class SeedConfigError(AccessControlError, ValueError):
    """Raised when the YAML seed configuration is invalid."""

    code = "SEED_CONFIG_ERROR"


class UnknownAccessRight(AccessControlError):
    code = "UNKNOWN_ACCESS_RIGHT"
    status_code = 400

    def __init__(self, key: str, role_name: str | None = None) -> None:
        msg = f"unknown access right {key!r}"
        if role_name:
            msg += f" referenced by role {role_name!r}"
        super().__init__(msg, key=key, role_name=role_name)


class CyclicRoleInheritance(AccessControlError):
    code = "CYCLIC_ROLE_INHERITANCE"
    status_code = 400

    def __init__(self, role_name: str, chain: list[str]) -> None:
        super().__init__(
            f"cycle detected in role inheritance at {role_name!r}: {' -> '.join(chain)}",
            role_name=role_name,
            chain=list(chain),
        )


class CorruptHierarchy(AccessControlError):
    code = "CORRUPT_HIERARCHY"

    def __init__(self, department_id: str, reason: str) -> None:
        super().__init__(f"corrupt department hierarchy at {department_id!r}: {reason}", department_id=department_id)


class InvalidRoleDefinition(AccessControlError, ValueError):
    code = "INVALID_ROLE_DEFINITION"
    status_code = 400


# ---- Role write errors ---------------------------------------------------------------


class RoleNotFound(AccessControlError):
    code = "ROLE_NOT_FOUND"
    status_code = 404

    def __init__(self, role_name: str) -> None:
        super().__init__(f"role {role_name!r} not found", role_name=role_name)


class RoleAlreadyExists(AccessControlError):
    code = "ROLE_ALREADY_EXISTS"
    status_code = 409

    def __init__(self, role_name: str, built_in: bool = False) -> None:
        kind = "built-in role" if built_in else "role"
        super().__init__(f"{kind} {role_name!r} already exists", role_name=role_name, built_in=built_in)


class ImmutableRole(AccessControlError):
    code = "IMMUTABLE_ROLE"
    status_code = 403

    def __init__(self, role_name: str) -> None:
        super().__init__(f"built-in role {role_name!r} cannot be modified or deleted", role_name=role_name)


class RoleHasActiveHolders(AccessControlError):
    code = "ROLE_HAS_ACTIVE_HOLDERS"
    status_code = 409

    def __init__(self, role_name: str, holder_count: int) -> None:
        super().__init__(
            f"role {role_name!r} is held by {holder_count} user(s); supply reassign_to",
            role_name=role_name,
            holder_count=holder_count,
        )


class RoleHasDependents(AccessControlError):
    code = "ROLE_HAS_DEPENDENTS"
    status_code = 409

    def __init__(self, role_name: str, dependents: list[str]) -> None:
        super().__init__(
            f"role {role_name!r} is inherited by {sorted(dependents)}",
            role_name=role_name,
            dependents=sorted(dependents),
        )


# ---- Department / session errors -----------------------------------------------------


class DepartmentNotFound(AccessControlError):
    code = "DEPARTMENT_NOT_FOUND"
    status_code = 404

    def __init__(self, department_id: str) -> None:
        super().__init__(f"department {department_id!r} not found", department_id=department_id)


class InvalidEscalationCredential(AccessControlError):
    code = "INVALID_ESCALATION_CREDENTIAL"
    status_code = 401

    def __init__(self, user_id: str) -> None:
        super().__init__("invalid escalation credentials", user_id=user_id)


class WeakEscalationPassword(AccessControlError, ValueError):
    code = "WEAK_ESCALATION_PASSWORD"
    status_code = 400

    def __init__(self, unmet: list[str], user_id: str | None = None) -> None:
        super().__init__(
            "escalation password does not meet requirements: " + "; ".join(unmet),
            user_id=user_id,
            unmet=list(unmet),
        )


class InsufficientPrivilege(AccessControlError):
    code = "INSUFFICIENT_PRIVILEGE"
    status_code = 403


class NotAMember(AccessControlError):
    code = "NOT_A_MEMBER"
    status_code = 403

    def __init__(self, user_id: str, department_id: str) -> None:
        super().__init__(
            f"user {user_id!r} is not a member of department {department_id!r}",
            user_id=user_id,
            department_id=department_id,
        )


class IllegalSessionTransition(AccessControlError):
    code = "ILLEGAL_SESSION_TRANSITION"
    status_code = 409

    def __init__(self, user_id: str, mode: str, event: str) -> None:
        super().__init__(f"cannot {event} from {mode} mode", user_id=user_id, mode=mode, event=event)


class SessionTokenError(AccessControlError):
    """Session token is malformed, forged or expired. Do not log the token."""

    code = "INVALID_SESSION_TOKEN"
    status_code = 401


# ---- Persistence ---------------------------------------------------------------------


class StoreUnavailable(AccessControlError):
    code = "STORE_UNAVAILABLE"
    status_code = 503

    def __init__(self, operation: str, **context: Any) -> None:
        super().__init__(f"access store unavailable during {operation}", operation=operation, **context)
