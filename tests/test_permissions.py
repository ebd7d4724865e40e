"""Unit tests for role flattening and wildcard grant evaluation."""

import itertools

import pytest

from aegis.service.permissions import (
    MatchRule,
    PermissionGrant,
    PermissionSet,
    grants,
    matching_rule,
    resolve,
)
from aegis.storage.models import Permission, Role


def _role(name, *claims):
    perms = []
    for i, claim in enumerate(claims):
        resource, action = claim.split(":")
        perms.append(Permission(id=f"{name}-{i}", resource=resource, action=action))
    return Role(id=name, name=name, permissions=perms)


class TestGrantParsing:
    def test_parse_normalizes_case_and_whitespace(self):
        grant = PermissionGrant.parse(" Users : READ ")

        assert grant == PermissionGrant("users", "read")
        assert grant.claim == "users:read"

    @pytest.mark.parametrize("claim", ["users", "users:read:extra", ":read", "users:", "", None])
    def test_malformed_claims_are_dropped(self, claim):
        assert PermissionGrant.parse(claim) is None

    def test_from_claims_skips_bad_entries(self):
        perms = PermissionSet.from_claims(["users:read", "garbage", "roles:*"])

        assert perms.to_claims() == ["roles:*", "users:read"]


class TestMatching:
    def test_exact_match(self):
        perms = PermissionSet.from_claims(["users:read"])

        assert perms.grants("users", "read")
        assert not perms.grants("users", "write")
        assert perms.matching_rule("users", "read") is MatchRule.EXACT

    def test_resource_wildcard_allows_any_action(self):
        perms = PermissionSet.from_claims(["users:*"])

        assert perms.grants("users", "delete")
        assert not perms.grants("roles", "read")
        assert perms.matching_rule("users", "delete") is MatchRule.ANY_ACTION

    def test_action_wildcard_allows_any_resource(self):
        perms = PermissionSet.from_claims(["*:read"])

        assert perms.grants("invoices", "read")
        assert not perms.grants("invoices", "write")
        assert perms.matching_rule("invoices", "read") is MatchRule.ANY_RESOURCE

    def test_full_wildcard_allows_everything(self):
        perms = PermissionSet.from_claims(["*:*"])

        assert perms.grants("anything", "at-all")
        assert perms.matching_rule("anything", "at-all") is MatchRule.ALL

    def test_exact_rule_reported_before_wildcards(self):
        perms = PermissionSet.from_claims(["*:*", "users:read"])

        assert perms.matching_rule("users", "read") is MatchRule.EXACT

    def test_empty_set_denies(self):
        perms = PermissionSet()

        assert not perms.grants("users", "read")
        assert perms.matching_rule("users", "read") is None

    def test_blank_request_is_denied_even_with_full_wildcard(self):
        perms = PermissionSet.from_claims(["*:*"])

        assert not perms.grants("", "read")
        assert not perms.grants("users", "")

    def test_request_is_case_insensitive(self):
        perms = PermissionSet.from_claims(["users:read"])

        assert perms.grants("USERS", "Read")

    def test_module_helpers_delegate(self):
        perms = PermissionSet.from_claims(["users:*"])

        assert grants(perms, "users", "write")
        assert matching_rule(perms, "users", "write") is MatchRule.ANY_ACTION


class TestResolve:
    def test_union_of_role_permissions_without_duplicates(self):
        roles = [
            _role("user", "users:read"),
            _role("support", "users:read", "tickets:*"),
        ]

        perms = resolve(roles)

        assert len(perms) == 2
        assert perms.to_claims() == ["tickets:*", "users:read"]

    def test_no_roles_resolves_to_empty_set(self):
        assert len(resolve([])) == 0

    def test_sets_compare_by_content(self):
        first = resolve([_role("a", "users:read", "roles:read")])
        second = PermissionSet.from_claims(["roles:read", "users:read"])

        assert first == second
        assert hash(first) == hash(second)
        assert PermissionGrant("users", "read") in first


def test_grants_matches_four_key_definition_for_every_small_set():
    resources = ["users", "roles", "*"]
    actions = ["read", "write", "*"]
    universe = [PermissionGrant(r, a) for r, a in itertools.product(resources, actions)]
    requests = list(
        itertools.product(["users", "roles", "audit", "*"], ["read", "write", "delete", "*"])
    )

    for mask in range(1 << len(universe)):
        chosen = {g for i, g in enumerate(universe) if mask & (1 << i)}
        perms = PermissionSet(chosen)
        for resource, action in requests:
            keys = {
                PermissionGrant(resource, action),
                PermissionGrant(resource, "*"),
                PermissionGrant("*", action),
                PermissionGrant("*", "*"),
            }
            assert perms.grants(resource, action) == bool(keys & chosen), (
                sorted(g.claim for g in chosen),
                resource,
                action,
            )
