"""Role-based data access rules."""

from .access_rules import (
    AccessRulesConfig,
    CallerIdentity,
    DataAccessRules,
    DataFilter,
    FilteredQuery,
    IdentityProvider,
    PermissionEngine,
    RoleCategory,
    StaticIdentityProvider,
    resolve_role_category,
)

__all__ = [
    "AccessRulesConfig",
    "CallerIdentity",
    "DataAccessRules",
    "DataFilter",
    "FilteredQuery",
    "IdentityProvider",
    "PermissionEngine",
    "RoleCategory",
    "StaticIdentityProvider",
    "resolve_role_category",
]
