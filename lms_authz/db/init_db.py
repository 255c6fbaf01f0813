from __future__ import annotations

from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session

from lms_authz.db.base import Base
from lms_authz.db.session import SessionLocal, engine
from lms_authz.engine.hierarchy import DepartmentHierarchy
from lms_authz.engine.loader import SeedConfig, load_seed_config
from lms_authz.models.security import AccessRight, Department, Role, RoleRight
from lms_authz.settings import get_settings


def init_db(seed_path: Path | None = None) -> None:
    """
    Create tables + seed the built-in catalog, roles and departments.

    Seeding only happens on an empty database, so it is safe to call on every
    startup.
    """

    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db:
        if _has_seed_data(db):
            return
        seed = load_seed_config(seed_path or get_settings().resolved_seed_config_path())
        seed_database(db, seed)


def _has_seed_data(db: Session) -> bool:
    return db.execute(select(AccessRight.id).limit(1)).first() is not None


def seed_database(db: Session, seed: SeedConfig) -> None:
    for right in seed.access_rights:
        db.add(
            AccessRight(
                key=right.key,
                domain=right.domain,
                sensitivity_level=right.sensitivity_level,
                sensitive_category=right.sensitive_category,
                is_wildcardable=right.is_wildcardable,
                description=right.description,
            )
        )

    # Parents before children; also rejects a corrupt seed tree up front.
    hierarchy = DepartmentHierarchy(seed.departments)
    for dept in sorted(seed.departments, key=lambda d: (len(hierarchy.ancestors_of(d.id)), d.id)):
        db.add(
            Department(
                id=dept.id,
                name=dept.name,
                parent_department_id=dept.parent_department_id,
                require_explicit_membership=dept.require_explicit_membership,
            )
        )
    db.flush()

    for role in seed.roles:
        db.add(
            Role(
                name=role.name,
                level=role.level,
                parent_role_name=role.parent_role,
                scope_kind=role.scope_kind.value,
                department_id=role.department_id,
                is_active=role.is_active,
                display_name=role.display_name,
                description=role.description,
                rights=[RoleRight(right_key=key) for key in sorted(role.granted_rights)],
            )
        )

    db.commit()
