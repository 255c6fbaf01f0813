"""Tests for cascading memberships down the department tree."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from lms_authz.engine import Department, DepartmentHierarchy, MembershipResolver


def _by_dept(effective):
    return {e.department_id: e for e in effective}


def test_direct_membership_cascades_until_explicit_department(resolver, make_membership):
    effective = _by_dept(resolver.resolve("u1", [make_membership("A", "instructor")]))

    assert set(effective) == {"A", "B"}
    assert effective["A"].is_direct and effective["A"].inherited_from is None
    assert not effective["B"].is_direct
    assert effective["B"].inherited_from == "A"
    assert effective["B"].roles == {"instructor"}


def test_direct_membership_in_explicit_department_applies(resolver, make_membership):
    effective = _by_dept(resolver.resolve("u1", [make_membership("A", "instructor"), make_membership("C", "course-taker")]))

    assert effective["C"].is_direct
    assert effective["C"].roles == {"course-taker"}


def test_roles_union_and_direct_wins(resolver, make_membership):
    effective = _by_dept(
        resolver.resolve(
            "u1",
            [make_membership("A", "instructor"), make_membership("B", "course-taker", is_primary=True)],
        )
    )

    assert effective["B"].roles == {"instructor", "course-taker"}
    assert effective["B"].is_direct
    assert effective["B"].inherited_from is None
    assert effective["B"].is_primary
    assert not effective["A"].is_primary


def test_nearest_contributor_recorded(make_membership):
    tree = DepartmentHierarchy(
        [
            Department(id="top"),
            Department(id="mid", parent_department_id="top"),
            Department(id="leaf", parent_department_id="mid"),
            Department(id="other"),
        ]
    )
    local = MembershipResolver(tree)
    # "mid" is nearer to "leaf" than "top", whatever the input order
    for memberships in (
        [make_membership("top", "course-taker"), make_membership("mid", "instructor")],
        [make_membership("mid", "instructor"), make_membership("top", "course-taker")],
    ):
        leaf = _by_dept(local.resolve("u1", memberships))["leaf"]
        assert leaf.inherited_from == "mid"
        assert leaf.roles == {"course-taker", "instructor"}


def test_inactive_and_expired_memberships_dropped(resolver, make_membership):
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    memberships = [
        make_membership("A", "instructor", is_active=False),
        make_membership("D", "course-taker", expires_at=now - timedelta(seconds=1)),
        make_membership("master", "system-admin", expires_at=now + timedelta(days=1)),
    ]

    effective = _by_dept(resolver.resolve("u1", memberships, now=now))

    assert set(effective) == {"master"}


def test_naive_expiry_treated_as_utc(resolver, make_membership):
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    expired = make_membership("D", "course-taker", expires_at=datetime(2026, 1, 1, 11, 0))

    assert resolver.resolve("u1", [expired], now=now) == []


def test_unknown_department_skipped(resolver, make_membership, caplog):
    effective = resolver.resolve("u1", [make_membership("gone", "instructor"), make_membership("D", "course-taker")])

    assert [e.department_id for e in effective] == ["D"]
    assert "unknown department" in caplog.text


def test_no_memberships(resolver):
    assert resolver.resolve("u1", []) == []


def test_to_dict(resolver, make_membership):
    effective = _by_dept(resolver.resolve("u1", [make_membership("A", "instructor")]))
    assert effective["B"].to_dict() == {
        "department_id": "B",
        "roles": ["instructor"],
        "is_direct": False,
        "inherited_from": "A",
        "is_primary": False,
    }
