"""Role flattening and resource/action grant evaluation.

A grant is a ``(resource, action)`` pair where either side may be ``*``.
A request for ``(resource, action)`` is allowed when the set contains one of

- ``(resource, action)``  exact match
- ``(resource, *)``       any action on that resource
- ``(*, action)``         that action on any resource
- ``(*, *)``              everything

Evaluation is a pure allow-list: nothing outside these four keys grants
access, and there are no deny rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional

from aegis.storage.models import Role

WILDCARD = "*"
MAX_PART_LENGTH = 50


def normalize_part(value: str) -> str:
    return (value or "").strip().lower()


@dataclass(frozen=True)
class PermissionGrant:
    resource: str
    action: str

    @classmethod
    def of(cls, resource: str, action: str) -> "PermissionGrant":
        return cls(normalize_part(resource), normalize_part(action))

    @classmethod
    def parse(cls, claim: str) -> Optional["PermissionGrant"]:
        """Parse a ``resource:action`` claim; ``None`` when malformed."""
        if not isinstance(claim, str) or claim.count(":") != 1:
            return None
        resource, action = claim.split(":")
        grant = cls.of(resource, action)
        if not grant.resource or not grant.action:
            return None
        return grant

    @property
    def claim(self) -> str:
        return f"{self.resource}:{self.action}"


class MatchRule(str, Enum):
    EXACT = "exact"
    ANY_ACTION = "any_action"
    ANY_RESOURCE = "any_resource"
    ALL = "all"


class PermissionSet:
    """Immutable, deduplicated set of grants with O(1) checks."""

    __slots__ = ("_grants",)

    def __init__(self, grants: Iterable[PermissionGrant] = ()) -> None:
        self._grants: FrozenSet[PermissionGrant] = frozenset(grants)

    @classmethod
    def from_claims(cls, claims: Iterable[str]) -> "PermissionSet":
        parsed = (PermissionGrant.parse(c) for c in claims or ())
        return cls(g for g in parsed if g is not None)

    def to_claims(self) -> List[str]:
        return sorted(g.claim for g in self._grants)

    def __contains__(self, grant: object) -> bool:
        return grant in self._grants

    def __iter__(self):
        return iter(self._grants)

    def __len__(self) -> int:
        return len(self._grants)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PermissionSet):
            return NotImplemented
        return self._grants == other._grants

    def __hash__(self) -> int:
        return hash(self._grants)

    def __repr__(self) -> str:
        return f"PermissionSet({self.to_claims()!r})"

    def matching_rule(self, resource: str, action: str) -> Optional[MatchRule]:
        resource = normalize_part(resource)
        action = normalize_part(action)
        if not resource or not action:
            return None
        if PermissionGrant(resource, action) in self._grants:
            return MatchRule.EXACT
        if PermissionGrant(resource, WILDCARD) in self._grants:
            return MatchRule.ANY_ACTION
        if PermissionGrant(WILDCARD, action) in self._grants:
            return MatchRule.ANY_RESOURCE
        if PermissionGrant(WILDCARD, WILDCARD) in self._grants:
            return MatchRule.ALL
        return None

    def grants(self, resource: str, action: str) -> bool:
        return self.matching_rule(resource, action) is not None


def resolve(roles: Iterable[Role]) -> PermissionSet:
    """Flatten the permissions of every role into one set."""
    return PermissionSet(
        PermissionGrant.of(p.resource, p.action)
        for role in roles
        for p in role.permissions
    )


def grants(permission_set: PermissionSet, resource: str, action: str) -> bool:
    return permission_set.grants(resource, action)


def matching_rule(
    permission_set: PermissionSet, resource: str, action: str
) -> Optional[MatchRule]:
    return permission_set.matching_rule(resource, action)
