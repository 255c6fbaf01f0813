"""
YAML seed loader for the built-in catalog, roles and departments.

Expected shape (simplified):

    access_rights:
      - key: content:courses:read
        sensitivity_level: 0
      - key: billing:invoices:read
        sensitivity_level: 2
        sensitive_category: billing
        wildcardable: false

    roles:
      instructor:
        level: 60
        rights: [content:courses:read, content:courses:write]
      course-reviewer:
        extends: instructor
        rights: [reports:courses:read]

    departments:
      - id: master
        name: System Administration
        require_explicit_membership: true

Roles loaded from the seed are built-in unless they say ``custom: true``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
import yaml

from lms_authz.errors import AccessControlError, SeedConfigError

from .types import (
    AccessRight,
    AccessRightKey,
    Department,
    RoleDefinition,
    RoleName,
    RoleScope,
    parse_keys,
)


class AccessRightSeed(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str
    sensitivity_level: int = 0
    sensitive_category: str | None = None
    wildcardable: bool = True
    description: str = ""


class RoleSeed(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: int
    rights: list[str] = Field(default_factory=list)
    extends: str | None = None
    custom: bool = False
    department_id: str | None = None
    active: bool = True
    display_name: str | None = None
    description: str | None = None


class DepartmentSeed(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str | None = None
    parent: str | None = None
    require_explicit_membership: bool = False


class SeedConfigModel(BaseModel):
    access_rights: list[AccessRightSeed] = Field(default_factory=list)
    roles: dict[str, RoleSeed] = Field(default_factory=dict)
    departments: list[DepartmentSeed] = Field(default_factory=list)


@dataclass(frozen=True)
class SeedConfig:
    access_rights: tuple[AccessRight, ...]
    roles: tuple[RoleDefinition, ...]
    departments: tuple[Department, ...]


def parse_seed_config(raw: dict[str, Any]) -> SeedConfig:
    try:
        model = SeedConfigModel.model_validate(raw)
    except ValidationError as exc:
        raise SeedConfigError(f"invalid seed config: {exc.error_count()} error(s)", errors=exc.errors()) from exc

    try:
        rights = tuple(
            AccessRight(
                key=AccessRightKey(r.key),
                domain=AccessRightKey(r.key).domain,
                sensitivity_level=r.sensitivity_level,
                sensitive_category=r.sensitive_category,
                is_wildcardable=r.wildcardable,
                description=r.description,
            )
            for r in model.access_rights
        )
        roles = tuple(
            RoleDefinition(
                name=RoleName(name),
                level=r.level,
                granted_rights=parse_keys(r.rights),
                parent_role=RoleName(r.extends) if r.extends else None,
                scope_kind=RoleScope.CUSTOM if r.custom else RoleScope.BUILT_IN,
                department_id=r.department_id,
                is_active=r.active,
                display_name=r.display_name,
                description=r.description,
            )
            for name, r in model.roles.items()
        )
    except AccessControlError as exc:
        raise SeedConfigError(f"invalid seed config: {exc.message}", **exc.context) from exc

    departments = tuple(
        Department(
            id=d.id,
            parent_department_id=d.parent,
            require_explicit_membership=d.require_explicit_membership,
            name=d.name,
        )
        for d in model.departments
    )
    return SeedConfig(access_rights=rights, roles=roles, departments=departments)


def load_seed_config(path: Path) -> SeedConfig:
    """Load and validate the seed YAML from disk."""

    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SeedConfigError(f"cannot read seed config {path}", path=str(path)) from exc
    raw = yaml.safe_load(raw_text) or {}
    if not isinstance(raw, dict):
        raise SeedConfigError(f"seed config must be a mapping: {path}", path=str(path))
    return parse_seed_config(raw)
