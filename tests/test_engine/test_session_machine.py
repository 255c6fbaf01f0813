"""Tests for the session / escalation state machine."""
from __future__ import annotations

from datetime import timedelta

import pytest

from lms_authz.engine import EscalationStateMachine, RoleDefinition, SessionMode
from lms_authz.engine.types import parse_keys
from lms_authz.errors import (
    IllegalSessionTransition,
    InsufficientPrivilege,
    InvalidEscalationCredential,
    NotAMember,
    StoreUnavailable,
)


@pytest.fixture
def admin_memberships(make_membership):
    return [make_membership("D", "course-taker", is_primary=True), make_membership("master", "system-admin")]


def test_login_starts_normal_in_primary_department(state_machine, admin_memberships):
    session = state_machine.login("admin-1", admin_memberships)

    assert session.mode is SessionMode.NORMAL
    assert session.active_department_id == "D"
    assert session.ttl == timedelta(minutes=60)
    assert "courses:read" in session.available_rights
    assert "system:roles:manage" not in session.available_rights


def test_escalate_with_valid_credential(state_machine, admin_memberships):
    session = state_machine.login("admin-1", admin_memberships)

    escalated = state_machine.escalate(session, "correct horse", admin_memberships)

    assert escalated.mode is SessionMode.ESCALATED
    assert escalated.escalated_roles == {"system-admin"}
    assert escalated.ttl == timedelta(minutes=15)
    assert "system:roles:manage" in escalated.available_rights
    # the caller's session is untouched
    assert session.mode is SessionMode.NORMAL


def test_escalate_with_wrong_password_keeps_session_normal(state_machine, admin_memberships, caplog):
    session = state_machine.login("admin-1", admin_memberships)

    with pytest.raises(InvalidEscalationCredential):
        state_machine.escalate(session, "wrong", admin_memberships)

    assert session.mode is SessionMode.NORMAL
    assert "wrong" not in caplog.text


def test_escalate_requires_admin_capable_role(state_machine, make_membership):
    memberships = [make_membership("A", "instructor")]
    session = state_machine.login("instructor-1", memberships)

    with pytest.raises(InsufficientPrivilege):
        state_machine.escalate(session, "instructor-pw", memberships)


def test_escalate_with_system_right_below_threshold(state_machine, fake_store, make_membership):
    fake_store.passwords["settings-1"] = "pw"
    memberships = [make_membership("D", "settings-admin")]
    session = state_machine.login("settings-1", memberships)

    escalated = state_machine.escalate(session, "pw", memberships)

    assert escalated.escalated_roles == {"settings-admin"}


def test_escalate_ignores_admin_role_outside_its_department(state_machine, role_store, fake_store, make_membership):
    role_store.create(
        RoleDefinition(name="dept-ops", level=40, granted_rights=parse_keys(["system:settings:manage"]), department_id="D"),
        requester_level=100,
    )
    fake_store.passwords["ops-1"] = "pw"
    memberships = [make_membership("A", "dept-ops")]
    session = state_machine.login("ops-1", memberships)

    with pytest.raises(InsufficientPrivilege):
        state_machine.escalate(session, "pw", memberships)

    in_scope = [make_membership("D", "dept-ops")]
    escalated = state_machine.escalate(state_machine.login("ops-1", in_scope), "pw", in_scope)
    assert escalated.escalated_roles == {"dept-ops"}
    assert "system:settings:manage" in escalated.available_rights


def test_escalate_twice_is_illegal(state_machine, admin_memberships):
    escalated = state_machine.escalate(state_machine.login("admin-1", admin_memberships), "correct horse", admin_memberships)

    with pytest.raises(IllegalSessionTransition):
        state_machine.escalate(escalated, "correct horse", admin_memberships)


def test_credential_backend_failure(state_machine, fake_store, admin_memberships):
    session = state_machine.login("admin-1", admin_memberships)
    fake_store.fail_on.add("verify_escalation_credential")

    with pytest.raises(StoreUnavailable):
        state_machine.escalate(session, "correct horse", admin_memberships)


def test_deescalate(state_machine, admin_memberships):
    session = state_machine.login("admin-1", admin_memberships)
    escalated = state_machine.escalate(session, "correct horse", admin_memberships)
    escalated = state_machine.switch_department(escalated, "master", admin_memberships)

    normal = state_machine.deescalate(escalated, admin_memberships)

    assert normal.mode is SessionMode.NORMAL
    assert normal.escalated_roles == frozenset()
    assert normal.active_department_id is None
    assert normal.available_rights == session.available_rights


def test_deescalate_from_normal_is_noop(state_machine, admin_memberships):
    session = state_machine.login("admin-1", admin_memberships)
    assert state_machine.deescalate(session, admin_memberships) is session


def test_switch_department(state_machine, make_membership):
    memberships = [make_membership("A", "instructor")]
    session = state_machine.login("instructor-1", memberships)

    switched = state_machine.switch_department(session, "B", memberships)

    assert switched.active_department_id == "B"
    assert switched.mode is session.mode
    with pytest.raises(NotAMember):
        state_machine.switch_department(session, "C", memberships)
    with pytest.raises(NotAMember):
        state_machine.switch_department(session, "D", memberships)


def test_continue_session_picks_up_new_rights(state_machine, make_membership):
    session = state_machine.login("u1", [make_membership("D", "course-taker")])

    updated, diff = state_machine.continue_session(session, [make_membership("D", "course-taker", "instructor")])

    assert diff.added == {"courses:write"}
    assert diff.removed == frozenset()
    assert "courses:write" in updated.available_rights


def test_continue_session_drops_escalation_when_admin_role_revoked(state_machine, admin_memberships, make_membership):
    escalated = state_machine.escalate(state_machine.login("admin-1", admin_memberships), "correct horse", admin_memberships)

    updated, diff = state_machine.continue_session(escalated, [make_membership("D", "course-taker")])

    assert updated.mode is SessionMode.NORMAL
    assert updated.escalated_roles == frozenset()
    assert "system:roles:manage" in diff.removed


def test_continue_session_clears_lost_active_department(state_machine, make_membership):
    memberships = [make_membership("A", "instructor"), make_membership("D", "course-taker")]
    session = state_machine.switch_department(state_machine.login("u1", memberships), "A", memberships)

    updated, _ = state_machine.continue_session(session, [make_membership("D", "course-taker")])

    assert updated.active_department_id is None


def test_continue_session_without_changes(state_machine, make_membership):
    memberships = [make_membership("A", "instructor")]
    session = state_machine.login("u1", memberships)

    updated, diff = state_machine.continue_session(session, memberships)

    assert not diff.changed
    assert updated.available_rights == session.available_rights


def test_escalated_ttl_cannot_exceed_normal(evaluator, role_store, fake_store):
    with pytest.raises(ValueError):
        EscalationStateMachine(
            evaluator,
            role_store,
            fake_store.verify_escalation_credential,
            session_ttl=timedelta(minutes=10),
            escalated_session_ttl=timedelta(minutes=30),
        )
