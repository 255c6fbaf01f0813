"""
Membership Resolver.

Expands a user's stored department memberships down the department tree:

- inactive or expired memberships are dropped first;
- each remaining membership applies directly to its department;
- its roles cascade to descendants (BFS, nearest first) until a department
  with require_explicit_membership is met: that department and its subtree
  are excluded. The directly-held department never blocks itself.
- when several memberships reach the same department, roles are unioned;
  a direct membership wins over inherited ones for is_direct/inherited_from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Sequence

from .hierarchy import DepartmentHierarchy
from .types import DepartmentMembership, EffectiveMembership, RoleName, as_aware, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _Accumulator:
    roles: set[RoleName] = field(default_factory=set)
    is_direct: bool = False
    is_primary: bool = False
    inherited_from: str | None = None
    distance: int = 0

    def freeze(self, department_id: str) -> EffectiveMembership:
        return EffectiveMembership(
            department_id=department_id,
            roles=frozenset(self.roles),
            is_direct=self.is_direct,
            inherited_from=None if self.is_direct else self.inherited_from,
            is_primary=self.is_primary,
        )


class MembershipResolver:
    def __init__(self, hierarchy: DepartmentHierarchy) -> None:
        self._hierarchy = hierarchy

    @property
    def hierarchy(self) -> DepartmentHierarchy:
        return self._hierarchy

    def resolve(
        self,
        user_id: str,
        memberships: Sequence[DepartmentMembership],
        now: datetime | None = None,
    ) -> list[EffectiveMembership]:
        now = as_aware(now) if now is not None else utcnow()
        merged: dict[str, _Accumulator] = {}

        for membership in memberships:
            if not membership.is_current(now):
                continue
            dept_id = membership.department_id
            if dept_id not in self._hierarchy:
                logger.warning("Skipping membership in unknown department user=%s department=%s", user_id, dept_id)
                continue

            direct = merged.setdefault(dept_id, _Accumulator())
            direct.roles.update(membership.roles)
            direct.is_direct = True
            direct.is_primary = direct.is_primary or membership.is_primary

            for descendant, distance in self._hierarchy.cascadable_descendants(dept_id):
                acc = merged.get(descendant)
                if acc is None:
                    acc = merged[descendant] = _Accumulator(inherited_from=dept_id, distance=distance)
                elif not acc.is_direct and (acc.inherited_from is None or distance < acc.distance):
                    acc.inherited_from = dept_id
                    acc.distance = distance
                acc.roles.update(membership.roles)

        result = [acc.freeze(dept_id) for dept_id, acc in merged.items()]
        logger.debug("Resolved %d effective memberships for user=%s", len(result), user_id)
        return result
