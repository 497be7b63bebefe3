"""
tests/test_scopes.py -- Unit tests for auth/scopes.py (Scope Resolver).

Coverage:
  - Scope string format and deduplication
  - System role resolution at org and org+project level:
      owner (everything + admin wildcard), admin (everything but destructive),
      developer (fixed list), viewer (*:read)
  - Non-members and no-org requests resolve to nothing
  - project without organization is a ValidationError
  - has_scope / has_any_scope / has_all_scopes, including the wildcard
  - Catalog queries: validate_scope, get_scope_level, get_available_scopes,
    get_scopes_by_category
  - add_member: unknown role -> 404, duplicate membership -> 409
  - Seeding twice is harmless

Fixtures used: env, org_id, project_id (see conftest.py).
"""

from __future__ import annotations

import pytest

from auth.errors import ConflictError, NotFoundError, ValidationError
from auth.scopes import (
    ADMIN_SCOPE,
    DESTRUCTIVE_SCOPES,
    LEVEL_ORGANIZATION,
    LEVEL_PROJECT,
    PERMISSION_CATALOG,
    SYSTEM_ROLES,
    is_valid_scope,
    seed_system_roles,
    validate_scope_format,
)

ORG_LEVEL = {p.name for p in PERMISSION_CATALOG if p.scope_level == LEVEL_ORGANIZATION}
PROJECT_LEVEL = {p.name for p in PERMISSION_CATALOG if p.scope_level == LEVEL_PROJECT}


class TestScopeFormat:
    @pytest.mark.parametrize("scope", ["traces:read", "api-keys:create", "a1:b2", ADMIN_SCOPE])
    def test_valid(self, scope) -> None:
        assert is_valid_scope(scope)

    @pytest.mark.parametrize("scope", ["", "traces", "Traces:read", "traces:", ":read", "1abc:read", "a:b:c"])
    def test_invalid(self, scope) -> None:
        assert not is_valid_scope(scope)

    def test_validate_scope_format_dedupes_in_order(self) -> None:
        assert validate_scope_format(["b:read", "a:read", "b:read"]) == ["b:read", "a:read"]

    def test_validate_scope_format_rejects_non_strings(self) -> None:
        with pytest.raises(ValidationError):
            validate_scope_format(["traces:read", 42])


class TestCatalog:
    def test_catalog_sizes(self) -> None:
        assert len(ORG_LEVEL) == 15
        assert len(PROJECT_LEVEL) == 11

    def test_system_roles_only_reference_catalog_scopes(self) -> None:
        known = ORG_LEVEL | PROJECT_LEVEL
        for granted in SYSTEM_ROLES.values():
            assert set(granted) <= known

    def test_seeding_is_idempotent(self, env) -> None:
        seed_system_roles(env.roles)
        assert len(env.roles.list_permissions()) == len(PERMISSION_CATALOG)


class TestResolution:
    def test_owner_gets_everything_and_wildcard(self, env, org_id, project_id) -> None:
        env.resolver.add_member("u", org_id, "owner")
        res = env.resolver.get_user_scopes("u", org_id, project_id)
        assert res.role == "owner"
        assert res.global_scopes == (ADMIN_SCOPE,)
        assert set(res.organization_scopes) == ORG_LEVEL
        assert set(res.project_scopes) == PROJECT_LEVEL
        assert res.has_scope("organizations:delete")
        assert res.has_scope("not-in:catalog")

    def test_admin_excludes_destructive_scopes(self, env, org_id, project_id) -> None:
        env.resolver.add_member("u", org_id, "admin")
        res = env.resolver.get_user_scopes("u", org_id, project_id)
        assert res.global_scopes == ()
        assert set(res.effective_scopes) == (ORG_LEVEL | PROJECT_LEVEL) - DESTRUCTIVE_SCOPES
        for scope in DESTRUCTIVE_SCOPES:
            assert not res.has_scope(scope)

    def test_developer(self, env, org_id, project_id) -> None:
        env.resolver.add_member("u", org_id, "developer")
        res = env.resolver.get_user_scopes_in_project("u", org_id, project_id)
        assert set(res.effective_scopes) == set(SYSTEM_ROLES["developer"])
        assert set(res.organization_scopes) == {"organizations:read", "members:read"}
        assert "api-keys:create" in res.project_scopes
        assert not res.has_scope("billing:read")

    def test_viewer_reads_only(self, env, org_id, project_id) -> None:
        env.resolver.add_member("u", org_id, "viewer")
        res = env.resolver.get_user_scopes("u", org_id, project_id)
        assert res.effective_scopes
        assert all(s.endswith(":read") for s in res.effective_scopes)
        assert not res.has_any_scope(["traces:export", "projects:write"])

    def test_organization_only_hides_project_scopes(self, env, org_id) -> None:
        env.resolver.add_member("u", org_id, "developer")
        res = env.resolver.get_user_scopes_in_organization("u", org_id)
        assert res.project_scopes == ()
        assert set(res.effective_scopes) == {"organizations:read", "members:read"}

    def test_effective_scopes_are_deduplicated_union(self, env, org_id, project_id) -> None:
        env.resolver.add_member("u", org_id, "owner")
        res = env.resolver.get_user_scopes("u", org_id, project_id)
        assert len(res.effective_scopes) == len(set(res.effective_scopes))
        assert res.scope_set == frozenset(res.effective_scopes)
        assert res.effective_scopes[0] == ADMIN_SCOPE

    def test_non_member_resolves_to_nothing(self, env, org_id, project_id) -> None:
        res = env.resolver.get_user_scopes("stranger", org_id, project_id)
        assert res.role is None
        assert res.effective_scopes == ()

    def test_no_organization_is_global_only(self, env) -> None:
        res = env.resolver.get_user_scopes("u")
        assert res.effective_scopes == ()

    def test_project_without_organization(self, env, project_id) -> None:
        with pytest.raises(ValidationError):
            env.resolver.get_user_scopes("u", None, project_id)

    def test_membership_is_per_organization(self, env, org_id) -> None:
        env.resolver.add_member("u", org_id, "owner")
        assert env.resolver.get_user_scopes("u", "01ARZ3NDEKTSV4RRFFQ69G5FAV").effective_scopes == ()


class TestChecks:
    def test_has_scope_helpers(self, env, org_id, project_id) -> None:
        env.resolver.add_member("u", org_id, "developer")
        assert env.resolver.has_scope("u", "traces:read", org_id, project_id)
        assert not env.resolver.has_scope("u", "traces:delete", org_id, project_id)
        assert env.resolver.has_any_scope("u", ["traces:delete", "traces:read"], org_id, project_id)
        assert not env.resolver.has_all_scopes("u", ["traces:delete", "traces:read"], org_id, project_id)
        assert env.resolver.has_all_scopes("u", ["traces:read", "traces:export"], org_id, project_id)

    def test_empty_requirement_lists(self, env, org_id) -> None:
        assert env.resolver.has_all_scopes("u", [], org_id)
        assert not env.resolver.has_any_scope("u", [], org_id)


class TestCatalogQueries:
    def test_validate_scope(self, env) -> None:
        env.resolver.validate_scope("traces:read")
        env.resolver.validate_scope(ADMIN_SCOPE)
        with pytest.raises(ValidationError):
            env.resolver.validate_scope("Bad")
        with pytest.raises(NotFoundError):
            env.resolver.validate_scope("widgets:read")

    def test_get_scope_level(self, env) -> None:
        assert env.resolver.get_scope_level("traces:read") == LEVEL_PROJECT
        assert env.resolver.get_scope_level("billing:manage") == LEVEL_ORGANIZATION
        with pytest.raises(NotFoundError):
            env.resolver.get_scope_level("widgets:read")

    def test_get_available_scopes(self, env) -> None:
        assert set(env.resolver.get_available_scopes(LEVEL_PROJECT)) == PROJECT_LEVEL
        assert len(env.resolver.get_available_scopes()) == len(PERMISSION_CATALOG)
        assert env.resolver.get_available_scopes("global") == []
        with pytest.raises(ValidationError):
            env.resolver.get_available_scopes("galaxy")

    def test_get_scopes_by_category(self, env) -> None:
        categories = env.resolver.get_scopes_by_category()
        names = [c.name for c in categories]
        assert names == sorted(names)
        assert sum(len(c.scopes) for c in categories) == len(PERMISSION_CATALOG)
        api_keys = next(c for c in categories if c.name == "api-keys")
        assert api_keys.display_name == "API Keys"
        assert set(api_keys.scopes) == {"api-keys:read", "api-keys:create", "api-keys:delete"}


class TestMembership:
    def test_unknown_role(self, env, org_id) -> None:
        with pytest.raises(NotFoundError):
            env.resolver.add_member("u", org_id, "emperor")

    def test_duplicate_membership(self, env, org_id) -> None:
        env.resolver.add_member("u", org_id, "viewer")
        with pytest.raises(ConflictError):
            env.resolver.add_member("u", org_id, "owner")
        assert env.resolver.get_user_scopes("u", org_id).role == "viewer"
