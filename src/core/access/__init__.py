"""
Hierarchical multi-tenant access control.

RBAC (role permissions) combined with HRBAC (scope hierarchy inheritance)
and organization tenancy, with size-bounded, version-invalidated caches in
front of the hierarchy lookups.

Usage:
    from core.access import AccessDecisionService, InMemoryAccessStorage

    storage = InMemoryAccessStorage()
    service = AccessDecisionService(storage)
    storage.set_listener(service)

    decision = await service.check_access(user_id, ["reports.view"], "Department", dept_id)
    if decision.allowed:
        ...
"""

from .cache import (
    BoundedTTLCache,
    CacheEntry,
    CacheManager,
    OrgCache,
    ScopeCache,
    VersionRegistry,
)
from .exceptions import (
    AccessControlError,
    AccessStorageError,
    HierarchyIntegrityError,
    OrgRequiredError,
    PermissionDeniedError,
    ScopeAccessDeniedError,
)
from .hierarchy import HierarchyIndex, build_tree, filter_active, resolve_root_org_id
from .models import (
    ORG_SCOPE_TYPE,
    AccessDecision,
    CapacityCheck,
    HierarchyTreeNode,
    OrgCacheEntry,
    OrgCheck,
    OrgNode,
    PermissionCheck,
    RoleRecord,
    ScopeAccessInfo,
    ScopeAssignment,
    ScopeCheck,
    ScopeNode,
    UserRecord,
    make_scope_key,
)
from .resolver import (
    check_user_limit,
    combine_decision,
    evaluate_permissions,
    expand_effective_scopes,
    is_at_capacity,
    resolve_org_access,
    resolve_scope_access,
)
from .service import AccessDecisionService, HierarchySnapshot
from .storage import AccessStorage, InMemoryAccessStorage, InvalidationListener

__all__ = [
    # Models
    "ORG_SCOPE_TYPE",
    "AccessDecision",
    "CapacityCheck",
    "HierarchyTreeNode",
    "OrgCacheEntry",
    "OrgCheck",
    "OrgNode",
    "PermissionCheck",
    "RoleRecord",
    "ScopeAccessInfo",
    "ScopeAssignment",
    "ScopeCheck",
    "ScopeNode",
    "UserRecord",
    "make_scope_key",
    # Exceptions
    "AccessControlError",
    "AccessStorageError",
    "HierarchyIntegrityError",
    "OrgRequiredError",
    "PermissionDeniedError",
    "ScopeAccessDeniedError",
    # Hierarchy
    "HierarchyIndex",
    "build_tree",
    "filter_active",
    "resolve_root_org_id",
    # Cache
    "BoundedTTLCache",
    "CacheEntry",
    "CacheManager",
    "OrgCache",
    "ScopeCache",
    "VersionRegistry",
    # Resolver
    "check_user_limit",
    "combine_decision",
    "evaluate_permissions",
    "expand_effective_scopes",
    "is_at_capacity",
    "resolve_org_access",
    "resolve_scope_access",
    # Service and storage
    "AccessDecisionService",
    "AccessStorage",
    "HierarchySnapshot",
    "InMemoryAccessStorage",
    "InvalidationListener",
]
