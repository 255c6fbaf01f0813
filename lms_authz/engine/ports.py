"""
Interfaces consumed from the external persistence collaborator.

The engine never talks to a database directly. Implementations raise whatever
they like; the engine wraps failures into StoreUnavailable and never retries.
"""

from __future__ import annotations

from typing import Protocol, Sequence

from .types import AccessRight, Department, DepartmentMembership, RoleDefinition


class RoleBackend(Protocol):
    """Hooks the Role Definition Store calls during writes."""

    def count_holders(self, role_name: str) -> int: ...

    def save_role_definition(self, role: RoleDefinition) -> None: ...

    def delete_role_definition(self, role_name: str, reassign_to: str | None = None) -> None:
        """Remove the definition and move (or drop) every membership row naming it, atomically."""


class AccessStore(RoleBackend, Protocol):
    """Full persistence port used by the service facade."""

    def load_access_rights(self) -> Sequence[AccessRight]: ...

    def load_role_definitions(self) -> Sequence[RoleDefinition]: ...

    def load_department_tree(self) -> Sequence[Department]: ...

    def load_memberships_for_user(self, user_id: str) -> Sequence[DepartmentMembership]: ...

    def verify_escalation_credential(self, user_id: str, password: str) -> bool: ...
