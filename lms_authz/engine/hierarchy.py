"""
Department Hierarchy.

A forest of departments with ancestor/descendant queries. The tree is written
by an external collaborator, so it is validated on load and every traversal is
depth-guarded: a cycle or dangling parent surfaces as CorruptHierarchy instead
of an endless loop.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import logging
from typing import Iterable

from lms_authz.errors import CorruptHierarchy, DepartmentNotFound

from .types import Department

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PathStep:
    """A department on a downward cascade path."""

    department_id: str
    require_explicit_membership: bool


class DepartmentHierarchy:
    def __init__(self, departments: Iterable[Department], *, max_depth: int = 64) -> None:
        self._max_depth = max_depth
        by_id: dict[str, Department] = {}
        for dept in departments:
            if dept.id in by_id:
                raise CorruptHierarchy(dept.id, "duplicate department id")
            by_id[dept.id] = dept

        children: dict[str, list[str]] = {dept_id: [] for dept_id in by_id}
        for dept in by_id.values():
            parent = dept.parent_department_id
            if parent is None:
                continue
            if parent == dept.id:
                raise CorruptHierarchy(dept.id, "department is its own parent")
            if parent not in by_id:
                raise CorruptHierarchy(dept.id, f"parent {parent!r} does not exist")
            children[parent].append(dept.id)

        self._by_id = by_id
        # Sorted for deterministic traversal order.
        self._children = {k: tuple(sorted(v)) for k, v in children.items()}

        for dept_id in by_id:
            self.ancestors_of(dept_id)
        logger.debug("Department hierarchy loaded: %d departments", len(by_id))

    def __contains__(self, dept_id: object) -> bool:
        return dept_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, dept_id: str) -> Department:
        dept = self._by_id.get(dept_id)
        if dept is None:
            raise DepartmentNotFound(dept_id)
        return dept

    def roots(self) -> list[str]:
        return sorted(d.id for d in self._by_id.values() if d.parent_department_id is None)

    def children_of(self, dept_id: str) -> tuple[str, ...]:
        self.get(dept_id)
        return self._children[dept_id]

    def ancestors_of(self, dept_id: str) -> list[str]:
        """Parent chain, nearest first. The department itself is not included."""

        current = self.get(dept_id)
        ancestors: list[str] = []
        seen = {dept_id}
        while current.parent_department_id is not None:
            parent = current.parent_department_id
            if parent in seen:
                raise CorruptHierarchy(dept_id, f"cycle through {parent!r}")
            if len(ancestors) >= self._max_depth:
                raise CorruptHierarchy(dept_id, f"ancestor chain exceeds {self._max_depth} levels")
            ancestors.append(parent)
            seen.add(parent)
            current = self.get(parent)
        return ancestors

    def descendants_of(self, dept_id: str) -> list[str]:
        """All descendants in BFS order, nearest first."""
        return [d for d, _depth in self._walk_down(dept_id)]

    def _walk_down(self, dept_id: str, blocked: bool = False) -> list[tuple[str, int]]:
        """
        BFS below dept_id yielding (department, depth).

        With blocked=True, departments requiring explicit membership are
        skipped together with their subtree.
        """

        self.get(dept_id)
        result: list[tuple[str, int]] = []
        seen = {dept_id}
        queue = deque((child, 1) for child in self._children[dept_id])
        while queue:
            current, depth = queue.popleft()
            if current in seen:
                raise CorruptHierarchy(current, "reached twice while descending")
            if depth > self._max_depth:
                raise CorruptHierarchy(current, f"descendant depth exceeds {self._max_depth} levels")
            seen.add(current)
            if blocked and self._by_id[current].require_explicit_membership:
                continue
            result.append((current, depth))
            queue.extend((child, depth + 1) for child in self._children[current])
        return result

    def cascadable_descendants(self, dept_id: str) -> list[tuple[str, int]]:
        """Descendants reachable by cascading from dept_id, with their depth."""
        return self._walk_down(dept_id, blocked=True)

    def is_descendant(self, candidate: str, ancestor: str) -> bool:
        return ancestor in self.ancestors_of(candidate)

    def cascade_path(self, from_dept: str, to_dept: str) -> list[PathStep]:
        """
        Downward path from ``from_dept`` to ``to_dept`` (both inclusive), each
        step annotated with its require_explicit_membership flag.

        Empty when ``to_dept`` is neither ``from_dept`` nor one of its descendants.
        """

        self.get(from_dept)
        if to_dept == from_dept:
            chain = [to_dept]
        else:
            ancestors = self.ancestors_of(to_dept)
            if from_dept not in ancestors:
                return []
            chain = [to_dept] + ancestors[: ancestors.index(from_dept) + 1]
        return [
            PathStep(department_id=d, require_explicit_membership=self._by_id[d].require_explicit_membership)
            for d in reversed(chain)
        ]
