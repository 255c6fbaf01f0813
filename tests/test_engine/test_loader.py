"""Tests for the YAML seed loader, including the shipped configuration."""
from __future__ import annotations

from pathlib import Path

import pytest

from lms_authz.engine import AccessRightCatalog, DepartmentHierarchy, RoleDefinitionStore
from lms_authz.engine.loader import load_seed_config, parse_seed_config
from lms_authz.errors import SeedConfigError

SHIPPED_CONFIG = Path(__file__).resolve().parents[2] / "config" / "access_control.yaml"


def test_shipped_config_is_consistent():
    seed = load_seed_config(SHIPPED_CONFIG)

    catalog = AccessRightCatalog(seed.access_rights)
    roles = RoleDefinitionStore(catalog, seed.roles)
    hierarchy = DepartmentHierarchy(seed.departments)

    assert all(r.is_built_in for r in roles.roles())
    assert "master" in hierarchy
    assert hierarchy.get("master").require_explicit_membership
    assert "billing:refunds:manage" not in catalog.expand_wildcard("billing:*")
    assert "content:courses:read" in roles.effective_rights("learner-supervisor")
    assert roles.is_admin_capable("system-admin", 90)
    assert not roles.is_admin_capable("department-admin", 90)


def test_parse_seed_config():
    seed = parse_seed_config(
        {
            "access_rights": [
                {"key": "courses:read"},
                {"key": "billing:refunds:manage", "sensitivity_level": 3, "wildcardable": False},
            ],
            "roles": {
                "instructor": {"level": 60, "rights": ["courses:read"]},
                "course-reviewer": {"level": 40, "extends": "instructor", "custom": True},
            },
            "departments": [{"id": "a"}, {"id": "b", "parent": "a", "require_explicit_membership": True}],
        }
    )

    refunds = seed.access_rights[1]
    assert refunds.domain == "billing" and not refunds.is_wildcardable and refunds.is_sensitive
    reviewer = seed.roles[1]
    assert reviewer.parent_role == "instructor"
    assert not reviewer.is_built_in
    assert seed.roles[0].is_built_in
    assert seed.departments[1].parent_department_id == "a"


@pytest.mark.parametrize(
    "raw",
    [
        {"roles": {"instructor": {"rights": []}}},
        {"roles": {"instructor": {"level": 60, "unexpected": True}}},
        {"access_rights": [{"key": "not a key"}]},
        {"roles": {"Bad Name": {"level": 10}}},
    ],
    ids=["missing-level", "unknown-field", "bad-key", "bad-role-name"],
)
def test_invalid_seed_config(raw):
    with pytest.raises(SeedConfigError):
        parse_seed_config(raw)


def test_load_missing_or_non_mapping_file(tmp_path):
    with pytest.raises(SeedConfigError):
        load_seed_config(tmp_path / "missing.yaml")

    listing = tmp_path / "list.yaml"
    listing.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(SeedConfigError):
        load_seed_config(listing)
