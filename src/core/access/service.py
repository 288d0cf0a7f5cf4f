"""
Access Decision Facade.

The single entry point used by request handlers:
    decision = await service.check_access(user_id, ["reports.view"], "Department", "dept-7")

Flow per decision:
1. Load the user (unknown or inactive -> unauthenticated decision)
2. RBAC: roles and the user's role ids from storage
3. HRBAC (target scope supplied): Scope Cache, storage on miss, then the
   scope hierarchy snapshot
4. Multi-tenancy: the user's org from the Organization Cache, and the org
   hierarchy snapshot when a target org is supplied
5. Compose the decision; strict mode raises instead of returning a denial

Storage failures are wrapped in AccessStorageError and propagate: the
decision is indeterminate, not denied.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .cache import CacheManager
from .exceptions import (
    AccessControlError,
    AccessStorageError,
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
    ScopeAssignment,
    ScopeCheck,
    UserRecord,
)
from .resolver import (
    check_user_limit,
    combine_decision,
    evaluate_permissions,
    expand_effective_scopes,
    resolve_org_access,
    resolve_scope_access,
)
from .storage import AccessStorage, InvalidationListener

logger = logging.getLogger(__name__)

DEFAULT_DENIAL_MESSAGE = (
    "You don't have the required permissions to perform this action. "
    "Please contact your administrator."
)


# =============================================================================
# HIERARCHY SNAPSHOT
# =============================================================================

@dataclass
class HierarchySnapshot:
    """Last built index of one hierarchy."""
    name: str
    index: Optional[HierarchyIndex] = None
    active_index: Optional[HierarchyIndex] = None
    built_at: float = 0.0
    stale: bool = True

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return (
            self.index is not None
            and not self.stale
            and now - self.built_at <= ttl_seconds
        )

    def refresh(self, index: HierarchyIndex, now: float, active_index: Optional[HierarchyIndex] = None) -> None:
        self.index = index
        self.active_index = active_index if active_index is not None else index
        self.built_at = now
        self.stale = False
        logger.debug(f"Rebuilt {self.name} hierarchy snapshot ({len(index)} nodes)")

    def mark_stale(self) -> None:
        self.stale = True

    def clear(self) -> None:
        self.index = None
        self.active_index = None
        self.built_at = 0.0
        self.stale = True


# =============================================================================
# ACCESS DECISION SERVICE
# =============================================================================

class AccessDecisionService(InvalidationListener):
    """
    Orchestrates caches, storage and the resolver into access decisions.

    Also the invalidation listener for storage writes: wire it with
    ``storage.set_listener(service)``.

    Args:
        storage: Storage collaborator
        caches: Scope and Organization caches (built from settings if None)
        settings: Access-control settings (``get_settings()`` if None)
        clock: Time source shared with the caches
    """

    def __init__(
        self,
        storage: AccessStorage,
        caches: Optional[CacheManager] = None,
        settings: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        if settings is None:
            from config import get_settings
            settings = get_settings()

        self.storage = storage
        self.settings = settings
        self.scope_settings = settings.scope_hierarchy
        self.tenancy_settings = settings.multi_tenancy
        self.caches = caches or CacheManager(settings, clock=clock)
        self._clock = clock
        self._scope_snapshot = HierarchySnapshot("scope")
        self._org_snapshot = HierarchySnapshot("org")

    # -------------------------------------------------------------------------
    # Decisions
    # -------------------------------------------------------------------------

    async def check_access(
        self,
        user_id: Optional[str],
        required_permissions: Iterable[str] = (),
        scope_type: Optional[str] = None,
        scope_id: Optional[str] = None,
        *,
        require_org: bool = False,
        target_org_id: Optional[str] = None,
        strict: bool = False,
    ) -> AccessDecision:
        """
        Decide whether a user may act, optionally within a target scope or org.

        Args:
            user_id: Authenticated user id (None when the caller is anonymous)
            required_permissions: Permission names that must all be granted
            scope_type: Level tag of the target scope
            scope_id: Target scope id
            require_org: Raise OrgRequiredError if the user has no org
            target_org_id: Org the user must belong to (directly or via an ancestor)
            strict: Raise instead of returning a denied decision

        Returns:
            AccessDecision

        Raises:
            AccessStorageError: Storage failed; the decision is indeterminate
            HierarchyIntegrityError: Corrupt hierarchy rows; the decision is indeterminate
            OrgRequiredError: require_org and the user has no org
            PermissionDeniedError: strict and permissions are missing
            ScopeAccessDeniedError: strict and the target scope or org is denied
        """
        required = list(required_permissions)
        if not user_id:
            return AccessDecision.unauthenticated()

        user = await self._fetch("fetch_user", user_id)
        if user is None or not user.active:
            logger.debug(f"User {user_id} not found or inactive")
            return AccessDecision.unauthenticated()

        if require_org and not user.org_id:
            raise OrgRequiredError(user_id)

        roles = await self._fetch("fetch_roles_with_permissions")
        role_ids = await self._fetch("fetch_user_role_ids", user_id)
        permission_check = evaluate_permissions(roles, role_ids, required)

        scope_check = None
        user_scopes: List[ScopeAssignment] = []
        if (scope_type or scope_id) and self.scope_settings.enable_hrbac:
            scope_check, user_scopes = await self._check_scope(user_id, scope_type, scope_id)

        org_check = None
        org_info = None
        if self.tenancy_settings.enable_multi_tenancy:
            if user.org_id:
                org_info = await self.get_org_info(user.org_id)
            if target_org_id:
                org_check = await self._check_org(user, target_org_id)

        decision = combine_decision(
            True, permission_check, scope_check, org_check, user, org=org_info
        )
        if not decision.allowed:
            self._log_denial(user_id, decision, scope_type, scope_id, target_org_id)

        if strict:
            self._raise_if_denied(
                decision, required, scope_type, scope_id, target_org_id, user_scopes
            )
        return decision

    async def get_user_scopes(self, user_id: str) -> List[ScopeAssignment]:
        """Direct scope assignments, Scope Cache first."""
        cached = self.caches.scope_cache.get(user_id)
        if cached is not None:
            return list(cached)

        assignments = await self._fetch("fetch_user_scope_assignments", user_id)
        # A miss may follow a hierarchy write this process never heard about
        self._scope_snapshot.mark_stale()
        self.caches.scope_cache.set(user_id, list(assignments))
        return list(assignments)

    async def get_accessible_scopes(self, user_id: str) -> Dict[str, ScopeAssignment]:
        """Every scope id the user can act within, mapped to the granting assignment."""
        assignments = await self.get_user_scopes(user_id)
        index = await self._scope_index()
        return expand_effective_scopes(assignments, index)

    async def get_scope_tree(self) -> List[HierarchyTreeNode]:
        index = await self._scope_index()
        return index.tree()

    # -------------------------------------------------------------------------
    # Multi-tenancy
    # -------------------------------------------------------------------------

    async def get_org_info(self, org_id: str) -> Optional[OrgCacheEntry]:
        """Org with its parent and root resolved, Organization Cache first."""
        cached = self.caches.org_cache.get(org_id)
        if cached is not None:
            return cached

        index = await self._org_index(include_inactive=True)
        org = index.get(org_id)
        if org is None:
            return None

        parent = index.get(org.parent_id)
        root = index.get(org.root_org_id or resolve_root_org_id(index, org.id))
        entry = OrgCacheEntry(
            org_id=org.id,
            org_name=org.name,
            parent_org_id=org.parent_id,
            parent_org_name=parent.name if parent else None,
            root_org_id=root.id if root else None,
            root_org_name=root.name if root else None,
        )
        self.caches.org_cache.set(org_id, entry)
        return entry

    async def check_org_access(self, user_id: str, target_org_id: str) -> OrgCheck:
        user = await self._fetch("fetch_user", user_id)
        if user is None or not user.active:
            return OrgCheck(org_ok=False)
        return await self._check_org(user, target_org_id)

    async def can_add_user_to_org(self, org_id: str) -> CapacityCheck:
        """
        Check whether one more active user fits in an org's tenant.

        The limit is the tenant root's ``user_limit`` (falling back to the
        configured default when it carries none) and the count covers active
        users of every org in the tenant.
        """
        index = await self._org_index(include_inactive=True)
        org = index.get(org_id)
        if org is None:
            return CapacityCheck(can_add=False, reason="Organization not found")

        root_id = org.root_org_id or resolve_root_org_id(index, org.id) or org.id
        root = index.get(root_id) or org
        tenant_ids = [root.id] + [d.id for d in index.descendants_of(root.id)]
        current = await self._fetch("count_active_users", tenant_ids)

        limit = root.user_limit or self.tenancy_settings.default_user_limit
        effective = replace(root, user_limit=limit, active=org.active and root.active)
        return check_user_limit(effective, current)

    async def get_org_tree(
        self,
        root_org_id: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[HierarchyTreeNode]:
        """Org forest, or the subtree under root_org_id."""
        index = await self._org_index(include_inactive=include_inactive)
        if root_org_id is None:
            return index.tree()

        root = index.get(root_org_id)
        if root is None:
            return []
        nodes = [replace(root, parent_id=None)] + index.descendants_of(root_org_id)
        return build_tree(nodes, max_depth=self.tenancy_settings.max_depth)

    # -------------------------------------------------------------------------
    # Invalidation (called by storage writes)
    # -------------------------------------------------------------------------

    def invalidate_user(self, user_id: str) -> None:
        self.caches.scope_cache.invalidate_user(user_id)

    def invalidate_by_scope(self, scope_type: str, scope_id: str) -> None:
        self.caches.scope_cache.invalidate_by_scope(scope_type, scope_id)
        self._scope_snapshot.mark_stale()

    def invalidate_by_scope_level(self, scope_type: str) -> None:
        self.caches.scope_cache.invalidate_by_scope_level(scope_type)
        self._scope_snapshot.mark_stale()

    def invalidate_org(self, org_id: str) -> None:
        self.caches.org_cache.invalidate_by_scope(ORG_SCOPE_TYPE, org_id)
        self._org_snapshot.mark_stale()

    def invalidate_all(self) -> None:
        self.caches.reset()
        self._scope_snapshot.mark_stale()
        self._org_snapshot.mark_stale()

    def reset(self) -> None:
        """Reset caches and snapshots (for testing)."""
        self.caches.reset()
        self._scope_snapshot.clear()
        self._org_snapshot.clear()

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = self.caches.get_stats()
        stats["scope_snapshot_nodes"] = len(self._scope_snapshot.index or ())
        stats["org_snapshot_nodes"] = len(self._org_snapshot.index or ())
        return stats

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _check_scope(
        self,
        user_id: str,
        scope_type: Optional[str],
        scope_id: Optional[str],
    ) -> Tuple[ScopeCheck, List[ScopeAssignment]]:
        """Resolve the target scope; also returns the assignments it was checked against."""
        if not scope_type or not scope_id:
            logger.warning(f"Incomplete scope target for user {user_id}: {scope_type}/{scope_id}")
            return ScopeCheck(scope_ok=False), []

        assignments = await self.get_user_scopes(user_id)
        index = await self._scope_index()
        check = resolve_scope_access(
            assignments,
            index,
            scope_type,
            scope_id,
            valid_levels=self.scope_settings.active_levels or None,
        )
        return check, assignments

    async def _check_org(self, user: UserRecord, target_org_id: str) -> OrgCheck:
        index = await self._org_index()
        if user.org_id and user.org_id not in index:
            # The user's own org is inactive or gone
            return OrgCheck(org_ok=False)
        return resolve_org_access(user.org_id, index, target_org_id)

    async def _scope_index(self) -> HierarchyIndex:
        now = self._clock()
        snapshot = self._scope_snapshot
        if not snapshot.is_fresh(now, self.scope_settings.cache_ttl_seconds):
            nodes = await self._fetch("fetch_scope_tree", self.scope_settings.default_org or None)
            snapshot.refresh(HierarchyIndex(nodes, max_depth=self.scope_settings.max_depth), now)
        return snapshot.index

    async def _org_index(self, include_inactive: bool = False) -> HierarchyIndex:
        now = self._clock()
        snapshot = self._org_snapshot
        if not snapshot.is_fresh(now, self.tenancy_settings.org_cache_ttl_seconds):
            orgs = await self._fetch("fetch_org_tree", None, True)
            max_depth = self.tenancy_settings.max_depth
            snapshot.refresh(
                HierarchyIndex(orgs, max_depth=max_depth),
                now,
                active_index=HierarchyIndex(filter_active(orgs), max_depth=max_depth),
            )
        return snapshot.index if include_inactive else snapshot.active_index

    async def _fetch(self, operation: str, *args):
        """Await a storage read, wrapping failures in AccessStorageError."""
        method = getattr(self.storage, operation)
        try:
            return await method(*args)
        except AccessControlError:
            raise
        except Exception as e:
            logger.error(f"Storage operation {operation} failed: {e}")
            raise AccessStorageError(operation, str(e)) from e

    def _log_denial(
        self,
        user_id: str,
        decision: AccessDecision,
        scope_type: Optional[str],
        scope_id: Optional[str],
        target_org_id: Optional[str],
    ) -> None:
        if not self.settings.log_permission_denials:
            return
        details = []
        if not decision.permission_ok:
            details.append(f"missing permissions {', '.join(decision.missing_permissions)}")
        if decision.scope_ok is False:
            details.append(f"no access to scope {scope_type}/{scope_id}")
        if decision.org_ok is False:
            details.append(f"no access to org {target_org_id}")
        logger.warning(f"Access denied for user {user_id}: {'; '.join(details)}")

    def _raise_if_denied(
        self,
        decision: AccessDecision,
        required: List[str],
        scope_type: Optional[str],
        scope_id: Optional[str],
        target_org_id: Optional[str],
        user_scopes: List[ScopeAssignment],
    ) -> None:
        if not decision.permission_ok:
            raise PermissionDeniedError(
                missing_permissions=decision.missing_permissions,
                user_permissions=decision.permissions,
                required_permissions=required,
                user_friendly_message=self._friendly_message(decision.missing_permissions),
            )
        if decision.scope_ok is False:
            raise ScopeAccessDeniedError(scope_type or "", scope_id or "", user_scopes)
        if decision.org_ok is False:
            raise ScopeAccessDeniedError(ORG_SCOPE_TYPE, target_org_id or "")

    def _friendly_message(self, missing: List[str]) -> Optional[str]:
        if not self.settings.friendly_error_messages:
            return None
        messages = [
            self.settings.permission_error_messages[name]
            for name in missing
            if name in self.settings.permission_error_messages
        ]
        return ". ".join(messages) if messages else DEFAULT_DENIAL_MESSAGE
