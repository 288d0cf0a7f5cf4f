"""
Scope/Permission Resolver.

Pure evaluation functions:
- RBAC: union of role permissions versus a required set
- HRBAC: direct scope assignments expanded down the scope tree
- Multi-tenancy: org membership over the org tree and user-limit checks

Expected "no access" outcomes are returned as result objects, never raised.
"""

import logging
from typing import Dict, Iterable, List, Optional, Set

from .hierarchy import HierarchyIndex
from .models import (
    AccessDecision,
    CapacityCheck,
    OrgCacheEntry,
    OrgCheck,
    OrgNode,
    PermissionCheck,
    RoleRecord,
    ScopeAccessInfo,
    ScopeAssignment,
    ScopeCheck,
    UserRecord,
)

logger = logging.getLogger(__name__)


# =============================================================================
# RBAC
# =============================================================================

def evaluate_permissions(
    roles: Iterable[RoleRecord],
    user_role_ids: Iterable[str],
    required: Iterable[str],
) -> PermissionCheck:
    """
    Evaluate required permissions against the user's roles.

    Permission names are compared as exact, case-sensitive strings.

    Args:
        roles: All roles with their permissions
        user_role_ids: Ids of the roles the user holds
        required: Permission names the caller needs

    Returns:
        PermissionCheck with the granted set and the missing names in the
        order they were required
    """
    held = set(user_role_ids)
    granted: Set[str] = set()
    for role in roles:
        if role.id in held:
            granted.update(role.permissions)

    missing: List[str] = []
    for name in required:
        if name not in granted and name not in missing:
            missing.append(name)

    return PermissionCheck(
        permission_ok=not missing,
        granted=frozenset(granted),
        missing_permissions=missing,
    )


# =============================================================================
# HRBAC
# =============================================================================

def expand_effective_scopes(
    assignments: Iterable[ScopeAssignment],
    index: HierarchyIndex,
) -> Dict[str, ScopeAssignment]:
    """
    Map every accessible scope id to the closest assignment granting it.

    Each assigned node grants itself and all of its descendants. When
    several assignments cover a node, the deepest one wins. Assignments to
    nodes missing from the tree grant nothing.
    """
    effective: Dict[str, ScopeAssignment] = {}
    granting_depth: Dict[str, int] = {}

    for assignment in assignments:
        node = index.get(assignment.scope_id)
        if node is None:
            logger.debug(f"Assignment to unknown scope {assignment.scope_id} ignored")
            continue

        depth = len(index.ancestors_of(node.id))
        covered = [node] + index.descendants_of(node.id)
        for scope in covered:
            if granting_depth.get(scope.id, -1) < depth:
                effective[scope.id] = assignment
                granting_depth[scope.id] = depth

    return effective


def resolve_scope_access(
    assignments: Iterable[ScopeAssignment],
    index: HierarchyIndex,
    scope_type: str,
    scope_id: str,
    valid_levels: Optional[Iterable[str]] = None,
) -> ScopeCheck:
    """
    Check whether assignments grant access to a target scope.

    An exact assignment wins, otherwise the closest assigned ancestor is
    reported as ``access_via``. Returns ``scope_ok=False`` when the user has
    no assignments, the scope type is not a known level, the target is not
    in the tree, or the target sits on a different level than scope_type.

    Args:
        assignments: The user's direct assignments
        index: Scope hierarchy
        scope_type: Level tag of the target
        scope_id: Target scope id
        valid_levels: Accepted level tags (defaults to levels in the tree)
    """
    by_scope_id = {a.scope_id: a for a in assignments}
    if not by_scope_id:
        return ScopeCheck(scope_ok=False)

    levels = set(valid_levels) if valid_levels else index.levels()
    if scope_type not in levels:
        logger.warning(f"Invalid scope_type '{scope_type}' in scope check for {scope_id}")
        return ScopeCheck(scope_ok=False)

    target = index.get(scope_id)
    if target is None or target.level_label != scope_type:
        return ScopeCheck(scope_ok=False)

    exact = by_scope_id.get(target.id)
    if exact is not None:
        return ScopeCheck(
            scope_ok=True,
            access_via=ScopeAccessInfo(exact.scope_type, target.id, target.name),
        )

    for ancestor in index.ancestors_of(target.id):
        granting = by_scope_id.get(ancestor.id)
        if granting is not None:
            return ScopeCheck(
                scope_ok=True,
                access_via=ScopeAccessInfo(granting.scope_type, ancestor.id, ancestor.name),
            )

    return ScopeCheck(scope_ok=False)


def combine_decision(
    authenticated: bool,
    permission_check: PermissionCheck,
    scope_check: Optional[ScopeCheck] = None,
    org_check: Optional[OrgCheck] = None,
    user: Optional[UserRecord] = None,
    org: Optional[OrgCacheEntry] = None,
) -> AccessDecision:
    """Compose the final decision. Unauthenticated callers get nothing else."""
    if not authenticated:
        return AccessDecision.unauthenticated()

    return AccessDecision(
        authenticated=True,
        permission_ok=permission_check.permission_ok,
        missing_permissions=list(permission_check.missing_permissions),
        permissions=sorted(permission_check.granted),
        scope_ok=scope_check.scope_ok if scope_check is not None else None,
        scope_access_via=scope_check.access_via if scope_check is not None else None,
        org_ok=org_check.org_ok if org_check is not None else None,
        user=user,
        org=org,
    )


# =============================================================================
# MULTI-TENANCY
# =============================================================================

def resolve_org_access(
    user_org_id: Optional[str],
    index: HierarchyIndex,
    target_org_id: str,
) -> OrgCheck:
    """A user's org grants access to itself and every descendant org."""
    if not user_org_id or target_org_id not in index:
        return OrgCheck(org_ok=False)
    if target_org_id == user_org_id or index.is_descendant(target_org_id, user_org_id):
        return OrgCheck(org_ok=True, access_via=user_org_id)
    return OrgCheck(org_ok=False)


def is_at_capacity(user_limit: int, current_user_count: int) -> bool:
    """``user_limit == 0`` means unlimited."""
    return user_limit > 0 and current_user_count >= user_limit


def check_user_limit(org: OrgNode, current_user_count: int) -> CapacityCheck:
    """Check whether one more active user fits in an org."""
    if not org.active:
        return CapacityCheck(
            can_add=False,
            current_user_count=current_user_count,
            user_limit=org.user_limit,
            reason="Organization is inactive",
        )

    if is_at_capacity(org.user_limit, current_user_count):
        return CapacityCheck(
            can_add=False,
            current_user_count=current_user_count,
            user_limit=org.user_limit,
            reason=f"Organization user limit reached ({current_user_count}/{org.user_limit})",
        )

    return CapacityCheck(
        can_add=True,
        current_user_count=current_user_count,
        user_limit=org.user_limit,
    )
