"""
Access-control service: the surface exposed to callers.

Wires the engine components over an AccessStore and loads the user's
memberships once per call, so every decision is made over one consistent
snapshot. Catalog, roles and department tree are loaded at construction and
refreshed with reload().
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, TypeVar

from lms_authz.engine.catalog import AccessRightCatalog
from lms_authz.engine.evaluator import PermissionEvaluator
from lms_authz.engine.hierarchy import DepartmentHierarchy
from lms_authz.engine.membership import MembershipResolver
from lms_authz.engine.ports import AccessStore
from lms_authz.engine.roles import RoleDefinitionStore
from lms_authz.engine.session import EscalationStateMachine
from lms_authz.engine.types import (
    DepartmentMembership,
    EffectiveMembership,
    EvaluationResult,
    RightsDiff,
    RoleDefinition,
    RoleDeletion,
    Session,
)
from lms_authz.errors import AccessControlError, StoreUnavailable
from lms_authz.settings import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AccessControlService:
    def __init__(self, store: AccessStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self.reload()

    # ---- Wiring ---------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[..., T], *args: Any, **context: Any) -> T:
        try:
            return fn(*args)
        except AccessControlError:
            raise
        except Exception as exc:
            logger.error("Access store %s failed", operation)
            raise StoreUnavailable(operation, **context) from exc

    def reload(self) -> None:
        """Rebuild catalog, roles and hierarchy from the store."""

        s = self._settings
        rights = self._call("load_access_rights", self._store.load_access_rights)
        role_defs = self._call("load_role_definitions", self._store.load_role_definitions)
        departments = self._call("load_department_tree", self._store.load_department_tree)

        catalog = AccessRightCatalog(rights)
        roles = RoleDefinitionStore(
            catalog,
            role_defs,
            backend=self._store,
            custom_level_range=s.custom_level_range,
            max_depth=s.max_role_depth,
        )
        hierarchy = DepartmentHierarchy(departments, max_depth=s.max_hierarchy_depth)
        master = s.master_department_id if s.master_department_id in hierarchy else None

        evaluator = PermissionEvaluator(
            catalog,
            roles,
            MembershipResolver(hierarchy),
            master_department_id=master,
        )
        machine = EscalationStateMachine(
            evaluator,
            roles,
            self._store.verify_escalation_credential,
            admin_level_threshold=s.admin_level_threshold,
            session_ttl=s.session_ttl,
            escalated_session_ttl=s.escalated_session_ttl,
            master_department_id=master,
        )

        self.catalog = catalog
        self.roles = roles
        self.hierarchy = hierarchy
        self.evaluator = evaluator
        self.sessions = machine
        logger.info(
            "Access control loaded: %d rights, %d roles, %d departments",
            len(catalog),
            len(roles.roles()),
            len(hierarchy),
        )

    def _memberships(self, user_id: str) -> list[DepartmentMembership]:
        return list(
            self._call(
                "load_memberships_for_user",
                self._store.load_memberships_for_user,
                user_id,
                user_id=user_id,
            )
        )

    # ---- Evaluation -----------------------------------------------------------------

    def evaluate(
        self,
        user_id: str,
        rights: Iterable[str],
        *,
        require_all: bool = False,
        department_id: str | None = None,
        session: Session | None = None,
    ) -> EvaluationResult:
        return self.evaluator.has_right(
            user_id,
            self._memberships(user_id),
            rights,
            require_all=require_all,
            department_id=department_id,
            session=session,
        )

    def expand_effective_membership(self, user_id: str) -> list[EffectiveMembership]:
        return self.evaluator.resolver.resolve(user_id, self._memberships(user_id))

    def effective_level(self, user_id: str) -> int:
        """Highest level among the active roles a user holds anywhere; 0 if none."""

        levels = [
            role.level
            for entry in self.expand_effective_membership(user_id)
            for role in (self.roles.find(name) for name in entry.roles)
            if role is not None and role.is_active
        ]
        return max(levels, default=0)

    # ---- Sessions -------------------------------------------------------------------

    def login(self, user_id: str) -> Session:
        return self.sessions.login(user_id, self._memberships(user_id))

    def escalate(self, session: Session, password: str) -> Session:
        return self.sessions.escalate(session, password, self._memberships(session.user_id))

    def deescalate(self, session: Session) -> Session:
        return self.sessions.deescalate(session, self._memberships(session.user_id))

    def switch_department(self, session: Session, department_id: str) -> Session:
        return self.sessions.switch_department(session, department_id, self._memberships(session.user_id))

    def continue_session(self, session: Session) -> tuple[Session, RightsDiff]:
        return self.sessions.continue_session(session, self._memberships(session.user_id))

    # ---- Role management ------------------------------------------------------------

    def create_role(self, role: RoleDefinition, requester_id: str) -> RoleDefinition:
        return self.roles.create(role, requester_level=self.effective_level(requester_id))

    def update_role(self, role_name: str, requester_id: str, **changes: Any) -> RoleDefinition:
        return self.roles.update(role_name, requester_level=self.effective_level(requester_id), **changes)

    def delete_role(self, role_name: str, requester_id: str, reassign_to: str | None = None) -> RoleDeletion:
        # The store moves holders and drops the definition in one transaction.
        deletion = self.roles.delete(role_name, reassign_to=reassign_to)
        logger.info(
            "Role %s deleted by %s (holders=%d reassign_to=%s)",
            deletion.role_name,
            requester_id,
            deletion.holder_count,
            deletion.reassign_to,
        )
        return deletion
