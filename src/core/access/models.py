"""
Access-control domain models.

Two structural hierarchies share the same node shape:
- Scope: fine-grained HRBAC partition (arbitrary depth, free-text level tags)
- Organization: tenancy boundary (memoized root id, active flag, user limit)

Plus the records the storage collaborator returns (roles, users,
scope assignments) and the result objects produced by the resolver and
the decision facade.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional


ORG_SCOPE_TYPE = "org"


def make_scope_key(scope_type: str, scope_id: str) -> str:
    """Build the version-registry key for a hierarchy node."""
    return f"{scope_type}:{scope_id}"


# =============================================================================
# HIERARCHY NODES
# =============================================================================

@dataclass(frozen=True)
class ScopeNode:
    """A node of the scope hierarchy. ``parent_id=None`` marks a root."""
    id: str
    name: str
    parent_id: Optional[str] = None
    level_label: str = ""
    tenant_id: Optional[str] = None


@dataclass(frozen=True)
class OrgNode:
    """
    A node of the organization hierarchy.

    ``root_org_id`` is None for root orgs and otherwise the id of the top
    ancestor. ``user_limit == 0`` means unlimited.
    """
    id: str
    name: str
    parent_id: Optional[str] = None
    root_org_id: Optional[str] = None
    active: bool = True
    user_limit: int = 0

    @property
    def parent_org_id(self) -> Optional[str]:
        return self.parent_id

    @property
    def level_label(self) -> str:
        return ORG_SCOPE_TYPE

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


@dataclass
class HierarchyTreeNode:
    """Tree-builder output node. Children are populated by the builder only."""
    node: Any
    depth: int = 0
    children: List["HierarchyTreeNode"] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.node.id

    def walk(self):
        """Yield this node and all descendants, depth first."""
        stack = [self]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(current.children))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.node.id,
            "name": self.node.name,
            "parent_id": self.node.parent_id,
            "level_label": self.node.level_label,
            "depth": self.depth,
            "children": [child.to_dict() for child in self.children],
        }


# =============================================================================
# STORAGE RECORDS
# =============================================================================

@dataclass(frozen=True)
class ScopeAssignment:
    """Direct grant of a user to one hierarchy node."""
    user_id: str
    scope_type: str
    scope_id: str

    @property
    def scope_key(self) -> str:
        return make_scope_key(self.scope_type, self.scope_id)

    def to_dict(self) -> Dict[str, str]:
        return {"scope_type": self.scope_type, "scope_id": self.scope_id}


@dataclass(frozen=True)
class RoleRecord:
    """A role and the permission names it grants."""
    id: str
    name: str
    permissions: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class UserRecord:
    """The slice of a user record the access engine needs."""
    id: str
    active: bool = True
    org_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class OrgCacheEntry:
    """Organization Cache payload: an org with its parent and root resolved."""
    org_id: str
    org_name: str
    parent_org_id: Optional[str] = None
    parent_org_name: Optional[str] = None
    root_org_id: Optional[str] = None
    root_org_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "org_id": self.org_id,
            "org_name": self.org_name,
            "parent_org_id": self.parent_org_id,
            "parent_org_name": self.parent_org_name,
            "root_org_id": self.root_org_id,
            "root_org_name": self.root_org_name,
        }


# =============================================================================
# EVALUATION RESULTS
# =============================================================================

@dataclass(frozen=True)
class ScopeAccessInfo:
    """The assignment that granted scope access."""
    scope_type: str
    scope_id: str
    scope_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "scope_type": self.scope_type,
            "scope_id": self.scope_id,
            "scope_name": self.scope_name,
        }


@dataclass
class PermissionCheck:
    """RBAC evaluation result."""
    permission_ok: bool
    granted: FrozenSet[str] = frozenset()
    missing_permissions: List[str] = field(default_factory=list)


@dataclass
class ScopeCheck:
    """HRBAC evaluation result."""
    scope_ok: bool
    access_via: Optional[ScopeAccessInfo] = None


@dataclass
class OrgCheck:
    """Organization membership evaluation result."""
    org_ok: bool
    access_via: Optional[str] = None


@dataclass
class CapacityCheck:
    """User-limit evaluation result."""
    can_add: bool
    current_user_count: int = 0
    user_limit: int = 0
    reason: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        """Remaining seats, or None when unlimited."""
        if self.user_limit == 0:
            return None
        return max(self.user_limit - self.current_user_count, 0)


@dataclass
class AccessDecision:
    """
    Structured decision returned by the facade.

    ``scope_ok`` is None when no target scope was supplied, ``org_ok`` is
    None when no org check was requested. ``org`` carries the user's org
    with its parent and root names when multi-tenancy is on.
    """
    authenticated: bool
    permission_ok: bool
    missing_permissions: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    scope_ok: Optional[bool] = None
    scope_access_via: Optional[ScopeAccessInfo] = None
    org_ok: Optional[bool] = None
    user: Optional[UserRecord] = None
    org: Optional[OrgCacheEntry] = None

    @classmethod
    def unauthenticated(cls) -> "AccessDecision":
        return cls(authenticated=False, permission_ok=False)

    @property
    def allowed(self) -> bool:
        if not (self.authenticated and self.permission_ok):
            return False
        if self.scope_ok is False or self.org_ok is False:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "authenticated": self.authenticated,
            "permission_ok": self.permission_ok,
            "missing_permissions": list(self.missing_permissions),
            "permissions": list(self.permissions),
        }
        if self.scope_ok is not None:
            data["scope_ok"] = self.scope_ok
            data["scope_access_via"] = (
                self.scope_access_via.to_dict() if self.scope_access_via else None
            )
        if self.org_ok is not None:
            data["org_ok"] = self.org_ok
        if self.org is not None:
            data["org"] = self.org.to_dict()
        return data
