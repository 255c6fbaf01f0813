"""
Role & access-rights resolution engine.

Pure Python: no web framework or database dependency. The persistence
collaborator is reached through the AccessStore protocol in ``ports``.
"""

from .catalog import AccessRightCatalog
from .evaluator import PermissionEvaluator
from .hierarchy import DepartmentHierarchy, PathStep
from .membership import MembershipResolver
from .ports import AccessStore, RoleBackend
from .roles import RoleDefinitionStore
from .session import EscalationStateMachine
from .types import (
    AccessRight,
    AccessRightKey,
    Department,
    DepartmentMembership,
    EffectiveMembership,
    EvaluationResult,
    RightDecision,
    RightsDiff,
    RoleDefinition,
    RoleDeletion,
    RoleName,
    RoleScope,
    Session,
    SessionMode,
)

__all__ = [
    "AccessRight",
    "AccessRightCatalog",
    "AccessRightKey",
    "AccessStore",
    "Department",
    "DepartmentHierarchy",
    "DepartmentMembership",
    "EffectiveMembership",
    "EscalationStateMachine",
    "EvaluationResult",
    "MembershipResolver",
    "PathStep",
    "PermissionEvaluator",
    "RightDecision",
    "RightsDiff",
    "RoleBackend",
    "RoleDefinition",
    "RoleDefinitionStore",
    "RoleDeletion",
    "RoleName",
    "RoleScope",
    "Session",
    "SessionMode",
]
