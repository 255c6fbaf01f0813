"""
SQLAlchemy implementation of the AccessStore port.

Every call opens its own short-lived session. Database failures are surfaced
as StoreUnavailable and never retried here; retry policy belongs to the caller.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
import logging

import bcrypt
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from lms_authz.engine.types import (
    AccessRight,
    AccessRightKey,
    Department,
    DepartmentMembership,
    RoleDefinition,
    RoleName,
    RoleScope,
    as_aware,
    parse_keys,
    parse_role_names,
    utcnow,
)
from lms_authz.errors import StoreUnavailable, WeakEscalationPassword
from lms_authz.models import security as orm

logger = logging.getLogger(__name__)

ESCALATION_PASSWORD_MIN_LENGTH = 8

ESCALATION_PASSWORD_REQUIREMENTS = (
    (f"at least {ESCALATION_PASSWORD_MIN_LENGTH} characters long", lambda p: len(p) >= ESCALATION_PASSWORD_MIN_LENGTH),
    ("contains at least one uppercase letter", lambda p: any(c.isupper() for c in p)),
    ("contains at least one lowercase letter", lambda p: any(c.islower() for c in p)),
    ("contains at least one number", lambda p: any(c.isdigit() for c in p)),
)


def escalation_password_requirements() -> list[str]:
    return [text for text, _ in ESCALATION_PASSWORD_REQUIREMENTS]


def validate_escalation_password(password: str, user_id: str | None = None) -> None:
    """Raise WeakEscalationPassword listing every requirement the password misses."""

    unmet = [text for text, check in ESCALATION_PASSWORD_REQUIREMENTS if not check(password or "")]
    if unmet:
        logger.warning("Escalation password rejected user=%s unmet=%d", user_id, len(unmet))
        raise WeakEscalationPassword(unmet, user_id=user_id)


def hash_escalation_password(password: str) -> str:
    if not password:
        raise ValueError("Escalation password cannot be empty")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


class SqlAccessStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self, operation: str, **context: object) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Access store %s failed: %s", operation, type(exc).__name__)
            raise StoreUnavailable(operation, **context) from exc
        finally:
            db.close()

    # ---- Loads ----------------------------------------------------------------------

    def load_access_rights(self) -> list[AccessRight]:
        with self._session("load_access_rights") as db:
            rows = db.scalars(select(orm.AccessRight).order_by(orm.AccessRight.key)).all()
            return [
                AccessRight(
                    key=AccessRightKey(row.key),
                    domain=row.domain,
                    sensitivity_level=row.sensitivity_level,
                    sensitive_category=row.sensitive_category,
                    is_wildcardable=row.is_wildcardable,
                    description=row.description or "",
                )
                for row in rows
            ]

    def load_role_definitions(self) -> list[RoleDefinition]:
        with self._session("load_role_definitions") as db:
            rows = db.scalars(select(orm.Role).options(selectinload(orm.Role.rights)).order_by(orm.Role.name)).all()
            return [_role_from_row(row) for row in rows]

    def load_department_tree(self) -> list[Department]:
        with self._session("load_department_tree") as db:
            rows = db.scalars(select(orm.Department).order_by(orm.Department.id)).all()
            return [
                Department(
                    id=row.id,
                    parent_department_id=row.parent_department_id,
                    require_explicit_membership=row.require_explicit_membership,
                    name=row.name,
                )
                for row in rows
            ]

    def load_memberships_for_user(self, user_id: str) -> list[DepartmentMembership]:
        with self._session("load_memberships_for_user", user_id=user_id) as db:
            user = db.get(orm.User, user_id)
            if user is None or not user.is_active:
                return []
            rows = db.scalars(
                select(orm.DepartmentMembership)
                .where(orm.DepartmentMembership.user_id == user_id)
                .options(selectinload(orm.DepartmentMembership.roles))
                .order_by(orm.DepartmentMembership.id)
            ).all()
            return [
                DepartmentMembership(
                    department_id=row.department_id,
                    roles=parse_role_names(r.role_name for r in row.roles),
                    is_primary=row.is_primary,
                    expires_at=as_aware(row.expires_at) if row.expires_at else None,
                    is_active=row.is_active,
                )
                for row in rows
            ]

    def count_holders(self, role_name: str) -> int:
        """Active users holding the role through an active, unexpired membership."""

        now = utcnow().replace(tzinfo=None)
        with self._session("count_holders", role_name=role_name) as db:
            stmt = (
                select(func.count(func.distinct(orm.DepartmentMembership.user_id)))
                .join(orm.MembershipRole, orm.MembershipRole.membership_id == orm.DepartmentMembership.id)
                .join(orm.User, orm.User.id == orm.DepartmentMembership.user_id)
                .where(
                    orm.MembershipRole.role_name == role_name,
                    orm.DepartmentMembership.is_active.is_(True),
                    orm.User.is_active.is_(True),
                    or_(orm.DepartmentMembership.expires_at.is_(None), orm.DepartmentMembership.expires_at > now),
                )
            )
            return int(db.execute(stmt).scalar_one())

    def verify_escalation_credential(self, user_id: str, password: str) -> bool:
        with self._session("verify_escalation_credential", user_id=user_id) as db:
            user = db.get(orm.User, user_id)
            if user is None or not user.is_active or not user.escalation_password_hash:
                return False
            stored = user.escalation_password_hash.encode("utf-8")
        if not password:
            return False
        return bcrypt.checkpw(password.encode("utf-8"), stored)

    # ---- Writes ---------------------------------------------------------------------

    def save_role_definition(self, role: RoleDefinition) -> None:
        with self._session("save_role_definition", role_name=role.name) as db:
            row = db.scalars(select(orm.Role).where(orm.Role.name == role.name)).one_or_none()
            if row is None:
                row = orm.Role(name=role.name)
                db.add(row)
            row.level = role.level
            row.parent_role_name = role.parent_role
            row.scope_kind = role.scope_kind.value
            row.department_id = role.department_id
            row.is_active = role.is_active
            row.display_name = role.display_name
            row.description = role.description
            wanted = set(role.granted_rights)
            row.rights = [r for r in row.rights if r.right_key in wanted]
            present = {r.right_key for r in row.rights}
            row.rights.extend(orm.RoleRight(right_key=key) for key in sorted(wanted - present))

    def delete_role_definition(self, role_name: str, reassign_to: str | None = None) -> None:
        """
        Delete a role and every membership row naming it, in one transaction.

        Inactive and expired memberships are included, so reactivating one never
        resurrects the grant. With reassign_to those memberships get that role instead.
        """

        with self._session("delete_role_definition", role_name=role_name, reassign_to=reassign_to) as db:
            memberships = db.scalars(
                select(orm.DepartmentMembership)
                .join(orm.MembershipRole)
                .where(orm.MembershipRole.role_name == role_name)
                .options(selectinload(orm.DepartmentMembership.roles))
            ).all()
            for membership in memberships:
                held = {r.role_name for r in membership.roles}
                membership.roles = [r for r in membership.roles if r.role_name != role_name]
                if reassign_to is not None and reassign_to not in held:
                    membership.roles.append(orm.MembershipRole(role_name=reassign_to))

            row = db.scalars(select(orm.Role).where(orm.Role.name == role_name)).one_or_none()
            if row is not None:
                db.delete(row)
            logger.info(
                "Role %s deleted; %d memberships %s",
                role_name,
                len(memberships),
                f"moved to {reassign_to}" if reassign_to else "cleared",
            )

    def set_escalation_password(self, user_id: str, password: str) -> None:
        validate_escalation_password(password, user_id=user_id)
        hashed = hash_escalation_password(password)
        with self._session("set_escalation_password", user_id=user_id) as db:
            user = db.get(orm.User, user_id)
            if user is None:
                raise ValueError(f"unknown user {user_id!r}")
            user.escalation_password_hash = hashed


def _role_from_row(row: orm.Role) -> RoleDefinition:
    return RoleDefinition(
        name=RoleName(row.name),
        level=row.level,
        granted_rights=parse_keys(r.right_key for r in row.rights),
        parent_role=RoleName(row.parent_role_name) if row.parent_role_name else None,
        scope_kind=RoleScope(row.scope_kind),
        department_id=row.department_id,
        is_active=row.is_active,
        display_name=row.display_name,
        description=row.description,
    )
