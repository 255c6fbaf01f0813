"""Access Right Catalog: the seeded registry of permission keys."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from lms_authz.errors import CatalogConfigError, UnknownAccessRight

from .types import AccessRight, AccessRightKey

logger = logging.getLogger(__name__)


class AccessRightCatalog:
    """
    Immutable, in-memory catalog of access rights.

    Wildcard expansion only returns rights flagged ``is_wildcardable``;
    non-wildcardable rights must be granted by their exact key.
    """

    def __init__(self, rights: Iterable[AccessRight]) -> None:
        by_key: dict[AccessRightKey, AccessRight] = {}
        for right in rights:
            key = AccessRightKey(right.key)
            if key.is_wildcard:
                raise CatalogConfigError(f"catalog entry {key!r} must not be a wildcard", key=key)
            if key in by_key:
                raise CatalogConfigError(f"duplicate access right {key!r}", key=key)
            if right.domain != key.domain:
                raise CatalogConfigError(
                    f"access right {key!r} declares domain {right.domain!r}",
                    key=key,
                    domain=right.domain,
                )
            by_key[key] = right
        self._by_key = by_key
        self._domains = frozenset(k.domain for k in by_key)
        logger.debug("Access right catalog built: %d rights, %d domains", len(by_key), len(self._domains))

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def __len__(self) -> int:
        return len(self._by_key)

    def __iter__(self) -> Iterator[AccessRight]:
        return iter(self._by_key.values())

    def keys(self) -> frozenset[AccessRightKey]:
        return frozenset(self._by_key)

    def domains(self) -> frozenset[str]:
        return self._domains

    def get(self, key: str) -> AccessRight:
        right = self._by_key.get(key)  # type: ignore[call-overload]
        if right is None:
            raise UnknownAccessRight(str(key))
        return right

    def is_sensitive(self, key: str) -> bool:
        right = self._by_key.get(key)  # type: ignore[call-overload]
        return bool(right and right.is_sensitive)

    def expand_wildcard(self, pattern: str) -> frozenset[AccessRightKey]:
        """
        Expand a pattern into concrete catalog keys.

            content:*          -> every wildcardable key in domain "content"
            content:courses:*  -> every wildcardable key starting "content:courses:"
            content:courses:read -> {that key} if catalogued, else empty
        """

        parsed = AccessRightKey(pattern)
        if not parsed.is_wildcard:
            return frozenset({parsed}) if parsed in self._by_key else frozenset()
        return frozenset(
            key for key, right in self._by_key.items() if right.is_wildcardable and parsed.covers(key)
        )

    @staticmethod
    def covers(pattern: str, key: str) -> bool:
        return AccessRightKey(pattern).covers(key)

    def validate_keys(self, keys: Iterable[str], role_name: str | None = None) -> None:
        """Raise UnknownAccessRight for the first key (sorted) the catalog cannot back."""
        for key in sorted(AccessRightKey(k) for k in keys):
            if key.is_wildcard:
                if not any(key.covers(k) for k in self._by_key):
                    raise UnknownAccessRight(key, role_name=role_name)
            elif key not in self._by_key:
                raise UnknownAccessRight(key, role_name=role_name)
