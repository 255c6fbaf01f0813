"""
Session / escalation state machine.

States and legal transitions:

    login                      -> normal
    normal    --escalate-->       escalated   (credential + admin-capable role)
    escalated --deescalate-->     normal      (always succeeds)
    normal    --deescalate-->     normal      (no-op)
    any       --switch_department--> same mode (department must be a membership)
    any       --continue-->       same mode   (rights recomputed; may drop to normal)

Anything missing from _TRANSITIONS raises IllegalSessionTransition. Sessions
are immutable: each transition returns a new Session and failures leave the
caller's instance untouched.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
import logging
from typing import Callable, Sequence

from lms_authz.errors import (
    AccessControlError,
    IllegalSessionTransition,
    InsufficientPrivilege,
    InvalidEscalationCredential,
    NotAMember,
    StoreUnavailable,
)

from .evaluator import PermissionEvaluator
from .roles import RoleDefinitionStore
from .types import (
    DepartmentMembership,
    EffectiveMembership,
    RightsDiff,
    RoleName,
    Session,
    SessionMode,
    utcnow,
)

logger = logging.getLogger(__name__)

CredentialVerifier = Callable[[str, str], bool]

_TRANSITIONS: dict[tuple[SessionMode, str], SessionMode | None] = {
    (SessionMode.NORMAL, "escalate"): SessionMode.ESCALATED,
    (SessionMode.NORMAL, "deescalate"): SessionMode.NORMAL,
    (SessionMode.ESCALATED, "deescalate"): SessionMode.NORMAL,
    # None: mode is kept as-is.
    (SessionMode.NORMAL, "switch_department"): None,
    (SessionMode.ESCALATED, "switch_department"): None,
    (SessionMode.NORMAL, "continue"): None,
    (SessionMode.ESCALATED, "continue"): None,
}


def _target_mode(session: Session, event: str) -> SessionMode:
    key = (session.mode, event)
    if key not in _TRANSITIONS:
        raise IllegalSessionTransition(session.user_id, session.mode.value, event)
    target = _TRANSITIONS[key]
    return session.mode if target is None else target


class EscalationStateMachine:
    def __init__(
        self,
        evaluator: PermissionEvaluator,
        roles: RoleDefinitionStore,
        verify_credential: CredentialVerifier,
        *,
        admin_level_threshold: int = 90,
        session_ttl: timedelta = timedelta(minutes=60),
        escalated_session_ttl: timedelta = timedelta(minutes=15),
        master_department_id: str | None = None,
    ) -> None:
        if escalated_session_ttl > session_ttl:
            raise ValueError("escalated sessions must not outlive normal sessions")
        self._evaluator = evaluator
        self._roles = roles
        self._verify_credential = verify_credential
        self._admin_level_threshold = admin_level_threshold
        self._session_ttl = session_ttl
        self._escalated_session_ttl = escalated_session_ttl
        self._master_department_id = master_department_id

    # ---- Helpers --------------------------------------------------------------------

    def _effective(self, user_id: str, memberships: Sequence[DepartmentMembership]) -> list[EffectiveMembership]:
        return self._evaluator.resolver.resolve(user_id, memberships)

    def admin_capable_roles(self, effective: Sequence[EffectiveMembership]) -> frozenset[RoleName]:
        """Admin-capable roles held where their department scope applies."""

        held: set[RoleName] = set()
        for entry in effective:
            for role_name in entry.roles:
                if not self._evaluator.role_applies(role_name, entry.department_id):
                    continue
                if self._roles.is_admin_capable(role_name, self._admin_level_threshold):
                    held.add(role_name)
        return frozenset(held)

    # ---- Transitions ----------------------------------------------------------------

    def login(self, user_id: str, memberships: Sequence[DepartmentMembership]) -> Session:
        effective = self._effective(user_id, memberships)
        primary = next((e.department_id for e in effective if e.is_primary), None)
        session = Session(
            user_id=user_id,
            mode=SessionMode.NORMAL,
            active_department_id=primary,
            ttl=self._session_ttl,
        )
        rights = self._evaluator.available_rights(user_id, memberships, session=session)
        logger.info("Session started user=%s active_department=%s", user_id, primary)
        return replace(session, available_rights=rights)

    def escalate(self, session: Session, password: str, memberships: Sequence[DepartmentMembership]) -> Session:
        target = _target_mode(session, "escalate")

        try:
            verified = bool(self._verify_credential(session.user_id, password))
        except AccessControlError:
            raise
        except Exception as exc:
            raise StoreUnavailable("verify_escalation_credential", user_id=session.user_id) from exc
        if not verified:
            logger.warning("Escalation failed: invalid credential user=%s", session.user_id)
            raise InvalidEscalationCredential(session.user_id)

        admin_roles = self.admin_capable_roles(self._effective(session.user_id, memberships))
        if not admin_roles:
            logger.warning("Escalation failed: no admin-capable role user=%s", session.user_id)
            raise InsufficientPrivilege(
                "user holds no admin-capable role",
                user_id=session.user_id,
            )

        escalated = replace(
            session,
            mode=target,
            escalated_roles=admin_roles,
            ttl=self._escalated_session_ttl,
            issued_at=utcnow(),
        )
        rights = self._evaluator.available_rights(session.user_id, memberships, session=escalated)
        logger.info("Escalation successful user=%s roles=%s", session.user_id, sorted(admin_roles))
        return replace(escalated, available_rights=rights)

    def deescalate(self, session: Session, memberships: Sequence[DepartmentMembership] = ()) -> Session:
        target = _target_mode(session, "deescalate")
        if not session.is_escalated:
            return session

        active = session.active_department_id
        if active is not None and active == self._master_department_id:
            active = None
        normal = replace(
            session,
            mode=target,
            escalated_roles=frozenset(),
            active_department_id=active,
            ttl=self._session_ttl,
            issued_at=utcnow(),
        )
        rights = self._evaluator.available_rights(session.user_id, memberships, session=normal)
        logger.info("Deescalation user=%s", session.user_id)
        return replace(normal, available_rights=rights)

    def switch_department(
        self,
        session: Session,
        department_id: str,
        memberships: Sequence[DepartmentMembership],
    ) -> Session:
        target = _target_mode(session, "switch_department")
        effective = self._effective(session.user_id, memberships)
        if department_id not in {e.department_id for e in effective}:
            logger.warning("Department switch rejected user=%s department=%s", session.user_id, department_id)
            raise NotAMember(session.user_id, department_id)
        logger.info("Department switch user=%s department=%s", session.user_id, department_id)
        return replace(session, mode=target, active_department_id=department_id)

    def continue_session(
        self,
        session: Session,
        memberships: Sequence[DepartmentMembership],
    ) -> tuple[Session, RightsDiff]:
        """
        Recompute available rights from current state without re-authentication.

        An escalated session whose user no longer holds an admin-capable role is
        dropped to normal; an active department the user lost is cleared.
        """

        mode = _target_mode(session, "continue")
        effective = self._effective(session.user_id, memberships)
        updated = session

        if mode is SessionMode.ESCALATED:
            admin_roles = self.admin_capable_roles(effective)
            if not admin_roles:
                logger.warning("Admin roles revoked, dropping to normal user=%s", session.user_id)
                updated = replace(updated, mode=SessionMode.NORMAL, escalated_roles=frozenset(), ttl=self._session_ttl)
            else:
                updated = replace(updated, escalated_roles=admin_roles)

        if updated.active_department_id is not None and updated.active_department_id not in {
            e.department_id for e in effective
        }:
            logger.info(
                "Active department no longer a membership user=%s department=%s",
                session.user_id,
                updated.active_department_id,
            )
            updated = replace(updated, active_department_id=None)

        rights = self._evaluator.available_rights(session.user_id, memberships, session=updated)
        diff = RightsDiff(
            added=rights - session.available_rights,
            removed=session.available_rights - rights,
        )
        if diff.changed:
            logger.info(
                "Session rights changed user=%s added=%d removed=%d",
                session.user_id,
                len(diff.added),
                len(diff.removed),
            )
        return replace(updated, available_rights=rights), diff
