"""
auth/scopes.py -- Scope Resolver, permission catalog and system roles.

A scope is a "resource:action" capability string gated at one of three
levels: global, organization or project. Scopes are resolved on demand and
never embedded in long-lived tokens, so a role change takes effect on the
next request.

Resolution for (user, org?, project?):
  1. no org       -> global scopes only (empty until system admins exist)
  2. org          -> the user's org permission set, filtered to org level
  3. org+project  -> the same set, also filtered to project level
     project without org is a ValidationError: a project cannot be scoped
     without its owning organization.
  4. effective = global | organization | project, deduplicated, plus a
     frozenset for O(1) membership checks.

Role shortcuts are policy applied before the permission-table filter:
  owner -> every catalog scope of the requested levels, plus ADMIN_SCOPE
  admin -> every catalog scope of the requested levels except
           DESTRUCTIVE_SCOPES
Any other role goes through the role_permissions join.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError

from auth.errors import ConflictError, NotFoundError, ValidationError
from auth.models import Permission
from auth.store import RoleStore

logger = logging.getLogger("warden.auth.scopes")

LEVEL_GLOBAL = "global"
LEVEL_ORGANIZATION = "organization"
LEVEL_PROJECT = "project"
SCOPE_LEVELS = (LEVEL_GLOBAL, LEVEL_ORGANIZATION, LEVEL_PROJECT)

# Universal wildcard: a holder satisfies any required scope.
ADMIN_SCOPE = "admin"

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_DEVELOPER = "developer"
ROLE_VIEWER = "viewer"

DESTRUCTIVE_SCOPES = frozenset({"organizations:delete", "projects:delete"})

_SCOPE_RE = re.compile(r"^[a-z][a-z0-9-]*:[a-z][a-z0-9-]*$")


def is_valid_scope(scope: str) -> bool:
    """True for "resource:action" strings and the admin wildcard."""
    return scope == ADMIN_SCOPE or bool(_SCOPE_RE.match(scope or ""))


def validate_scope_format(scopes: Iterable[str]) -> list[str]:
    """Return scopes deduplicated in order; raise ValidationError on a malformed one."""
    checked: list[str] = []
    for scope in scopes:
        if not isinstance(scope, str) or not is_valid_scope(scope):
            raise ValidationError(f"Invalid scope format: {scope!r}", detail={"field": "scopes"})
        if scope not in checked:
            checked.append(scope)
    return checked


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def _perm(name: str, level: str, category: str, description: str) -> Permission:
    resource, action = name.split(":", 1)
    return Permission(
        name=name,
        resource=resource,
        action=action,
        scope_level=level,
        category=category,
        description=description,
    )


PERMISSION_CATALOG: tuple[Permission, ...] = (
    # Organization level
    _perm("organizations:read", LEVEL_ORGANIZATION, "organization", "View organization details"),
    _perm("organizations:write", LEVEL_ORGANIZATION, "organization", "Edit organization details"),
    _perm("organizations:delete", LEVEL_ORGANIZATION, "organization", "Delete the organization"),
    _perm("members:read", LEVEL_ORGANIZATION, "members", "View organization members"),
    _perm("members:invite", LEVEL_ORGANIZATION, "members", "Invite new members"),
    _perm("members:remove", LEVEL_ORGANIZATION, "members", "Remove members"),
    _perm("roles:read", LEVEL_ORGANIZATION, "rbac", "View roles and permissions"),
    _perm("roles:write", LEVEL_ORGANIZATION, "rbac", "Create and edit custom roles"),
    _perm("roles:delete", LEVEL_ORGANIZATION, "rbac", "Delete custom roles"),
    _perm("billing:read", LEVEL_ORGANIZATION, "billing", "View invoices and usage"),
    _perm("billing:manage", LEVEL_ORGANIZATION, "billing", "Change plans and payment methods"),
    _perm("settings:read", LEVEL_ORGANIZATION, "settings", "View organization settings"),
    _perm("settings:write", LEVEL_ORGANIZATION, "settings", "Change organization settings"),
    _perm("audit:read", LEVEL_ORGANIZATION, "audit", "View audit logs"),
    _perm("projects:create", LEVEL_ORGANIZATION, "projects", "Create projects"),
    # Project level
    _perm("projects:read", LEVEL_PROJECT, "projects", "View projects"),
    _perm("projects:write", LEVEL_PROJECT, "projects", "Edit projects"),
    _perm("projects:delete", LEVEL_PROJECT, "projects", "Delete projects"),
    _perm("environments:read", LEVEL_PROJECT, "projects", "View environments"),
    _perm("environments:write", LEVEL_PROJECT, "projects", "Create and edit environments"),
    _perm("api-keys:read", LEVEL_PROJECT, "api-keys", "View key pairs"),
    _perm("api-keys:create", LEVEL_PROJECT, "api-keys", "Issue key pairs"),
    _perm("api-keys:delete", LEVEL_PROJECT, "api-keys", "Revoke key pairs"),
    _perm("traces:read", LEVEL_PROJECT, "observability", "View traces"),
    _perm("traces:export", LEVEL_PROJECT, "observability", "Export traces"),
    _perm("traces:delete", LEVEL_PROJECT, "observability", "Delete traces"),
)

CATALOG_BY_NAME: dict[str, Permission] = {p.name: p for p in PERMISSION_CATALOG}

_ALL = [p.name for p in PERMISSION_CATALOG]

SYSTEM_ROLES: dict[str, tuple[str, ...]] = {
    ROLE_OWNER: tuple(_ALL),
    ROLE_ADMIN: tuple(n for n in _ALL if n not in DESTRUCTIVE_SCOPES),
    ROLE_DEVELOPER: (
        "organizations:read",
        "members:read",
        "projects:read",
        "projects:write",
        "environments:read",
        "environments:write",
        "api-keys:read",
        "api-keys:create",
        "api-keys:delete",
        "traces:read",
        "traces:export",
    ),
    ROLE_VIEWER: tuple(n for n in _ALL if n.endswith(":read")),
}

CATEGORY_NAMES = {
    "organization": "Organization Management",
    "members": "Team Members",
    "rbac": "Roles & Permissions",
    "billing": "Billing & Subscriptions",
    "settings": "Settings",
    "audit": "Audit Logs",
    "projects": "Projects",
    "api-keys": "API Keys",
    "observability": "Observability",
}


def seed_system_roles(roles: RoleStore) -> None:
    """Insert the permission catalog and the four system roles. Idempotent."""
    roles.seed(PERMISSION_CATALOG, SYSTEM_ROLES)
    logger.info("Seeded %d permissions and %d system roles", len(PERMISSION_CATALOG), len(SYSTEM_ROLES))


# ---------------------------------------------------------------------------
# Resolution value object
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScopeResolution:
    user_id: str
    organization_id: str | None = None
    project_id: str | None = None
    role: str | None = None
    global_scopes: tuple[str, ...] = ()
    organization_scopes: tuple[str, ...] = ()
    project_scopes: tuple[str, ...] = ()
    effective_scopes: tuple[str, ...] = ()
    scope_set: frozenset[str] = field(default_factory=frozenset)

    def has_scope(self, scope: str) -> bool:
        return ADMIN_SCOPE in self.scope_set or scope in self.scope_set

    def has_any_scope(self, scopes: Iterable[str]) -> bool:
        return any(self.has_scope(s) for s in scopes)

    def has_all_scopes(self, scopes: Iterable[str]) -> bool:
        return all(self.has_scope(s) for s in scopes)


@dataclass(frozen=True)
class ScopeCategory:
    name: str
    display_name: str
    level: str
    scopes: tuple[str, ...]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ScopeResolver:
    """Computes effective scopes. Read-only: resolving never writes."""

    def __init__(self, roles: RoleStore) -> None:
        self._roles = roles

    def get_user_scopes(
        self,
        user_id: str,
        organization_id: str | None = None,
        project_id: str | None = None,
    ) -> ScopeResolution:
        if project_id is not None and organization_id is None:
            raise ValidationError(
                "organization_id is required when project_id is provided.",
                detail={"field": "organization_id"},
            )

        global_scopes: list[str] = []
        org_scopes: list[str] = []
        project_scopes: list[str] = []
        role_name: str | None = None

        if organization_id is not None:
            role = self._roles.get_member_role(user_id, organization_id)
            role_name = role.name if role is not None else None
            levels = {LEVEL_ORGANIZATION}
            if project_id is not None:
                levels.add(LEVEL_PROJECT)
            by_level = self._scopes_for_role(user_id, organization_id, role_name, levels)
            org_scopes = by_level.get(LEVEL_ORGANIZATION, [])
            project_scopes = by_level.get(LEVEL_PROJECT, [])
            if role_name == ROLE_OWNER:
                global_scopes.append(ADMIN_SCOPE)

        effective: list[str] = []
        for scope in (*global_scopes, *org_scopes, *project_scopes):
            if scope not in effective:
                effective.append(scope)

        return ScopeResolution(
            user_id=user_id,
            organization_id=organization_id,
            project_id=project_id,
            role=role_name,
            global_scopes=tuple(global_scopes),
            organization_scopes=tuple(org_scopes),
            project_scopes=tuple(project_scopes),
            effective_scopes=tuple(effective),
            scope_set=frozenset(effective),
        )

    def _scopes_for_role(
        self,
        user_id: str,
        organization_id: str,
        role_name: str | None,
        levels: set[str],
    ) -> dict[str, list[str]]:
        by_level: dict[str, list[str]] = {}
        if role_name is None:
            return by_level

        if role_name in (ROLE_OWNER, ROLE_ADMIN):
            for permission in self._roles.list_permissions():
                if permission.scope_level not in levels:
                    continue
                if role_name == ROLE_ADMIN and permission.name in DESTRUCTIVE_SCOPES:
                    continue
                by_level.setdefault(permission.scope_level, []).append(permission.name)
            return by_level

        for permission in self._roles.get_user_permissions_in_organization(user_id, organization_id):
            if permission.scope_level in levels:
                by_level.setdefault(permission.scope_level, []).append(permission.name)
        return by_level

    def get_user_scopes_in_organization(self, user_id: str, organization_id: str) -> ScopeResolution:
        return self.get_user_scopes(user_id, organization_id, None)

    def get_user_scopes_in_project(self, user_id: str, organization_id: str, project_id: str) -> ScopeResolution:
        return self.get_user_scopes(user_id, organization_id, project_id)

    def has_scope(
        self, user_id: str, scope: str, organization_id: str | None = None, project_id: str | None = None
    ) -> bool:
        return self.get_user_scopes(user_id, organization_id, project_id).has_scope(scope)

    def has_any_scope(
        self,
        user_id: str,
        scopes: Iterable[str],
        organization_id: str | None = None,
        project_id: str | None = None,
    ) -> bool:
        return self.get_user_scopes(user_id, organization_id, project_id).has_any_scope(scopes)

    def has_all_scopes(
        self,
        user_id: str,
        scopes: Iterable[str],
        organization_id: str | None = None,
        project_id: str | None = None,
    ) -> bool:
        return self.get_user_scopes(user_id, organization_id, project_id).has_all_scopes(scopes)

    # ------------------------------------------------------------------
    # Catalog queries
    # ------------------------------------------------------------------

    def validate_scope(self, scope: str) -> None:
        """Raise ValidationError for a malformed scope, NotFoundError for an unknown one."""
        if not is_valid_scope(scope):
            raise ValidationError(f"Invalid scope format: {scope!r}", detail={"field": "scope"})
        if scope == ADMIN_SCOPE:
            return
        if self._roles.get_permission_by_name(scope) is None:
            raise NotFoundError(f"Scope not found: {scope}")

    def get_scope_level(self, scope: str) -> str:
        permission = self._roles.get_permission_by_name(scope)
        if permission is None:
            raise NotFoundError(f"Scope not found: {scope}")
        return permission.scope_level

    def get_available_scopes(self, level: str | None = None) -> list[str]:
        if level is not None and level not in SCOPE_LEVELS:
            raise ValidationError(f"Unknown scope level: {level!r}", detail={"field": "level"})
        return [p.name for p in self._roles.list_permissions(level)]

    def get_scopes_by_category(self) -> list[ScopeCategory]:
        grouped: dict[str, list[Permission]] = {}
        for permission in self._roles.list_permissions():
            grouped.setdefault(permission.category or "other", []).append(permission)
        return [
            ScopeCategory(
                name=category,
                display_name=CATEGORY_NAMES.get(category, category),
                level=perms[0].scope_level,
                scopes=tuple(p.name for p in perms),
            )
            for category, perms in sorted(grouped.items())
        ]

    # ------------------------------------------------------------------
    # Membership (used by the surrounding org subsystem and tests)
    # ------------------------------------------------------------------

    def add_member(self, user_id: str, organization_id: str, role_name: str) -> None:
        """Give user_id role_name in organization_id.

        Raises NotFoundError for an unknown role, ConflictError if the user is
        already a member.
        """
        role = self._roles.get_role(role_name, organization_id) or self._roles.get_role(role_name)
        if role is None:
            raise NotFoundError(f"Role not found: {role_name}")
        try:
            self._roles.add_member(user_id, organization_id, role.id)
        except IntegrityError as exc:
            raise ConflictError("User is already a member of this organization.") from exc
