"""
Pytest fixtures for the test suite.

Engine tests run against a small in-memory LMS fixture (catalog, roles and a
department tree A > B > C plus the master department) served by
InMemoryAccessStore. Data-layer tests use an in-memory SQLite engine and a
session that rolls back after each test, so tests do not affect each other.
"""
from __future__ import annotations

from collections import defaultdict

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from lms_authz.engine import (
    AccessRight,
    AccessRightCatalog,
    AccessRightKey,
    Department,
    DepartmentHierarchy,
    DepartmentMembership,
    EscalationStateMachine,
    MembershipResolver,
    PermissionEvaluator,
    RoleDefinition,
    RoleDefinitionStore,
    RoleScope,
)
from lms_authz.engine.types import parse_keys, parse_role_names
from lms_authz.settings import Settings


TEST_DB_URL = "sqlite:///:memory:"

MASTER = "master"


# ---- Engine fixture data -------------------------------------------------------------


def _right(key: str, **kwargs) -> AccessRight:
    parsed = AccessRightKey(key)
    return AccessRight(key=parsed, domain=parsed.domain, **kwargs)


def _role(name: str, level: int, rights=(), parent=None, built_in=True, **kwargs) -> RoleDefinition:
    return RoleDefinition(
        name=name,
        level=level,
        granted_rights=parse_keys(rights),
        parent_role=parent,
        scope_kind=RoleScope.BUILT_IN if built_in else RoleScope.CUSTOM,
        **kwargs,
    )


def membership(department_id: str, *roles: str, **kwargs) -> DepartmentMembership:
    return DepartmentMembership(department_id=department_id, roles=parse_role_names(roles), **kwargs)


ACCESS_RIGHTS = [
    _right("courses:read"),
    _right("courses:write"),
    _right("reports:read"),
    _right("reports:write"),
    _right("content:lessons:read"),
    _right("content:lessons:manage"),
    _right("content:exams:manage"),
    _right("billing:invoices:read", sensitivity_level=2, sensitive_category="billing"),
    _right("billing:refunds:manage", sensitivity_level=3, sensitive_category="billing", is_wildcardable=False),
    _right("system:settings:manage"),
    _right("system:roles:manage"),
]

ROLE_DEFINITIONS = [
    _role("course-taker", 10, ["courses:read", "content:lessons:read"]),
    _role("instructor", 60, ["courses:read", "courses:write"]),
    _role("billing-viewer", 30, ["billing:*"]),
    _role("system-admin", 100, ["system:*", "content:*", "billing:*", "reports:write"]),
    _role("settings-admin", 40, ["system:settings:manage"]),
    _role("course-reviewer", 40, ["reports:read"], parent="instructor", built_in=False),
    _role("content-admin", 70, ["content:lessons:manage"], built_in=False),
    _role("retired-role", 20, ["reports:write"], built_in=False, is_active=False),
]

DEPARTMENTS = [
    Department(id=MASTER, name="System Administration", require_explicit_membership=True),
    Department(id="A", name="Faculty of Science"),
    Department(id="B", parent_department_id="A", name="Physics"),
    Department(id="C", parent_department_id="B", require_explicit_membership=True, name="Physics Exams Board"),
    Department(id="D", name="Faculty of Arts"),
]


class InMemoryAccessStore:
    """AccessStore over plain dicts; records every write for assertions."""

    def __init__(self, access_rights, role_definitions, departments):
        self.access_rights = list(access_rights)
        self.roles = {r.name: r for r in role_definitions}
        self.departments = list(departments)
        self.memberships: dict[str, list[DepartmentMembership]] = defaultdict(list)
        self.passwords: dict[str, str] = {}
        self.holder_overrides: dict[str, int] = {}
        self.writes: list[tuple] = []
        self.fail_on: set[str] = set()

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise ConnectionError(f"{operation} unavailable")

    def load_access_rights(self):
        self._check("load_access_rights")
        return list(self.access_rights)

    def load_role_definitions(self):
        self._check("load_role_definitions")
        return list(self.roles.values())

    def load_department_tree(self):
        self._check("load_department_tree")
        return list(self.departments)

    def load_memberships_for_user(self, user_id):
        self._check("load_memberships_for_user")
        return list(self.memberships.get(user_id, []))

    def count_holders(self, role_name):
        self._check("count_holders")
        if role_name in self.holder_overrides:
            return self.holder_overrides[role_name]
        return sum(1 for ms in self.memberships.values() if any(m.is_active and role_name in m.roles for m in ms))

    def verify_escalation_credential(self, user_id, password):
        self._check("verify_escalation_credential")
        return bool(password) and self.passwords.get(user_id) == password

    def save_role_definition(self, role):
        self._check("save_role_definition")
        self.roles[role.name] = role
        self.writes.append(("save", role.name))

    def delete_role_definition(self, role_name, reassign_to=None):
        # Fails before touching anything, like a rolled-back transaction.
        self._check("delete_role_definition")
        for user_id, ms in self.memberships.items():
            updated = []
            for m in ms:
                if role_name in m.roles:
                    roles = set(m.roles) - {role_name}
                    if reassign_to is not None:
                        roles.add(reassign_to)
                    m = DepartmentMembership(
                        department_id=m.department_id,
                        roles=parse_role_names(roles),
                        is_primary=m.is_primary,
                        expires_at=m.expires_at,
                        is_active=m.is_active,
                    )
                updated.append(m)
            self.memberships[user_id] = updated
        self.roles.pop(role_name, None)
        self.writes.append(("delete", role_name, reassign_to))


# ---- Engine fixtures -----------------------------------------------------------------


@pytest.fixture
def make_membership():
    return membership


@pytest.fixture
def fake_store():
    store = InMemoryAccessStore(ACCESS_RIGHTS, ROLE_DEFINITIONS, DEPARTMENTS)
    store.memberships["instructor-1"] = [membership("A", "instructor", is_primary=True)]
    store.memberships["learner-1"] = [membership("D", "course-taker", is_primary=True)]
    store.memberships["admin-1"] = [
        membership("D", "course-taker", is_primary=True),
        membership(MASTER, "system-admin"),
    ]
    store.passwords["admin-1"] = "correct horse"
    store.passwords["instructor-1"] = "instructor-pw"
    return store


@pytest.fixture
def catalog():
    return AccessRightCatalog(ACCESS_RIGHTS)


@pytest.fixture
def role_store(catalog, fake_store):
    return RoleDefinitionStore(catalog, ROLE_DEFINITIONS, backend=fake_store, custom_level_range=(10, 89))


@pytest.fixture
def hierarchy():
    return DepartmentHierarchy(DEPARTMENTS)


@pytest.fixture
def resolver(hierarchy):
    return MembershipResolver(hierarchy)


@pytest.fixture
def evaluator(catalog, role_store, resolver):
    return PermissionEvaluator(catalog, role_store, resolver, master_department_id=MASTER)


@pytest.fixture
def state_machine(evaluator, role_store, fake_store):
    return EscalationStateMachine(
        evaluator,
        role_store,
        fake_store.verify_escalation_credential,
        admin_level_threshold=90,
        master_department_id=MASTER,
    )


@pytest.fixture
def settings():
    return Settings(
        db_url=TEST_DB_URL,
        token_secret="test-secret",
        master_department_id=MASTER,
    )


@pytest.fixture
def service(fake_store, settings):
    from lms_authz.service import AccessControlService

    return AccessControlService(fake_store, settings)


# ---- Database fixtures ---------------------------------------------------------------


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite engine for each test."""
    return create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        echo=False,
    )


@pytest.fixture
def tables(engine):
    """Create all ORM tables on the test engine."""
    from lms_authz.db.base import Base
    from lms_authz.models import security  # noqa: F401  (register models)

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session(tables):
    """
    Provide a Session bound to the test DB; roll back after each test.

    The transaction is rolled back so the next test gets a clean state.
    """
    connection = tables.connect()
    transaction = connection.begin()
    TestSession = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        class_=Session,
    )
    session = TestSession()
    yield session
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def session_factory(tables):
    """
    sessionmaker bound to one connection whose outer transaction is rolled back
    after the test. Sessions opened by SqlAccessStore commit into it freely.
    """
    connection = tables.connect()
    transaction = connection.begin()
    factory = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        class_=Session,
    )
    yield factory
    transaction.rollback()
    connection.close()
