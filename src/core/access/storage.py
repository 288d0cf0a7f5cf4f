"""
Storage collaborator contract and the in-memory reference collaborator.

The engine reads from storage only:
- all role -> permission mappings
- a user's record, role ids and direct scope assignments
- scope / org hierarchy rows
- active user counts per org

Invalidation contract: storage is responsible for calling back into the
InvalidationListener after every mutation of roles, assignments or
hierarchy nodes. Each write method below documents the call it makes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Set

from .models import OrgNode, RoleRecord, ScopeAssignment, ScopeNode, UserRecord

logger = logging.getLogger(__name__)


# =============================================================================
# CONTRACTS
# =============================================================================

class InvalidationListener(ABC):
    """Receives cache invalidation callbacks from storage writes."""

    @abstractmethod
    def invalidate_user(self, user_id: str) -> None:
        pass

    @abstractmethod
    def invalidate_by_scope(self, scope_type: str, scope_id: str) -> None:
        pass

    @abstractmethod
    def invalidate_by_scope_level(self, scope_type: str) -> None:
        pass

    @abstractmethod
    def invalidate_org(self, org_id: str) -> None:
        pass

    @abstractmethod
    def invalidate_all(self) -> None:
        pass


class AccessStorage(ABC):
    """Read operations the access engine awaits on cache miss."""

    listener: Optional[InvalidationListener] = None

    def set_listener(self, listener: Optional[InvalidationListener]) -> None:
        self.listener = listener

    @abstractmethod
    async def fetch_roles_with_permissions(self) -> List[RoleRecord]:
        pass

    @abstractmethod
    async def fetch_user(self, user_id: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def fetch_user_role_ids(self, user_id: str) -> List[str]:
        pass

    @abstractmethod
    async def fetch_user_scope_assignments(self, user_id: str) -> List[ScopeAssignment]:
        pass

    @abstractmethod
    async def fetch_scope_tree(self, tenant_id: Optional[str] = None) -> List[ScopeNode]:
        pass

    @abstractmethod
    async def fetch_org_tree(
        self,
        root_org_id: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[OrgNode]:
        pass

    @abstractmethod
    async def count_active_users(self, org_ids: Iterable[str]) -> int:
        pass


# =============================================================================
# IN-MEMORY COLLABORATOR
# =============================================================================

class InMemoryAccessStorage(AccessStorage):
    """
    Dict-backed storage with administrative writes.

    Reads return copies of rows in insertion order. Writes notify the
    listener (usually the AccessDecisionService) so cached data is
    invalidated before the write returns.
    """

    def __init__(self, listener: Optional[InvalidationListener] = None):
        self.listener = listener
        self._roles: Dict[str, RoleRecord] = {}
        self._users: Dict[str, UserRecord] = {}
        self._user_roles: Dict[str, List[str]] = {}
        self._scopes: Dict[str, ScopeNode] = {}
        self._user_scopes: Dict[str, List[ScopeAssignment]] = {}
        self._orgs: Dict[str, OrgNode] = {}

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def fetch_roles_with_permissions(self) -> List[RoleRecord]:
        return list(self._roles.values())

    async def fetch_user(self, user_id: str) -> Optional[UserRecord]:
        return self._users.get(user_id)

    async def fetch_user_role_ids(self, user_id: str) -> List[str]:
        return list(self._user_roles.get(user_id, []))

    async def fetch_user_scope_assignments(self, user_id: str) -> List[ScopeAssignment]:
        return list(self._user_scopes.get(user_id, []))

    async def fetch_scope_tree(self, tenant_id: Optional[str] = None) -> List[ScopeNode]:
        if not tenant_id:
            return list(self._scopes.values())
        return [s for s in self._scopes.values() if s.tenant_id == tenant_id]

    async def fetch_org_tree(
        self,
        root_org_id: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[OrgNode]:
        orgs = list(self._orgs.values())
        if root_org_id:
            orgs = [o for o in orgs if o.id == root_org_id or o.root_org_id == root_org_id]
        if not include_inactive:
            orgs = [o for o in orgs if o.active]
        return orgs

    async def count_active_users(self, org_ids: Iterable[str]) -> int:
        wanted = set(org_ids)
        return sum(1 for u in self._users.values() if u.active and u.org_id in wanted)

    # -------------------------------------------------------------------------
    # Roles
    # -------------------------------------------------------------------------

    def add_role(self, role_id: str, name: str, permissions: Iterable[str] = ()) -> RoleRecord:
        # Roles are read fresh for every decision: no cached data to invalidate
        role = RoleRecord(id=role_id, name=name, permissions=frozenset(permissions))
        self._roles[role_id] = role
        return role

    def set_role_permissions(self, role_id: str, permissions: Iterable[str]) -> RoleRecord:
        # Roles are read fresh for every decision: no cached data to invalidate
        role = replace(self._require(self._roles, role_id, "role"), permissions=frozenset(permissions))
        self._roles[role_id] = role
        return role

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def add_user(
        self,
        user_id: str,
        org_id: Optional[str] = None,
        active: bool = True,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> UserRecord:
        user = UserRecord(id=user_id, active=active, org_id=org_id, email=email, name=name)
        self._users[user_id] = user
        # Drop anything cached under a reused user id
        self._notify("invalidate_user", user_id)
        return user

    def set_user_active(self, user_id: str, active: bool) -> UserRecord:
        user = replace(self._require(self._users, user_id, "user"), active=active)
        self._users[user_id] = user
        # Cached assignments must not outlive a deactivation
        self._notify("invalidate_user", user_id)
        return user

    def set_user_org(self, user_id: str, org_id: Optional[str]) -> UserRecord:
        user = replace(self._require(self._users, user_id, "user"), org_id=org_id)
        self._users[user_id] = user
        # Org membership is read per decision; scope entries are keyed by user
        self._notify("invalidate_user", user_id)
        return user

    def assign_role(self, user_id: str, role_id: str) -> None:
        self._require(self._roles, role_id, "role")
        role_ids = self._user_roles.setdefault(user_id, [])
        if role_id not in role_ids:
            role_ids.append(role_id)
        # Role ids are read per decision; user entry dropped for consistency
        self._notify("invalidate_user", user_id)

    def remove_role(self, user_id: str, role_id: str) -> None:
        role_ids = self._user_roles.get(user_id, [])
        if role_id in role_ids:
            role_ids.remove(role_id)
        self._notify("invalidate_user", user_id)

    # -------------------------------------------------------------------------
    # Scope hierarchy
    # -------------------------------------------------------------------------

    def add_scope(
        self,
        scope_id: str,
        name: str,
        level_label: str,
        parent_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> ScopeNode:
        if scope_id in self._scopes:
            raise ValueError(f"Scope {scope_id} already exists")
        if parent_id is not None:
            self._require(self._scopes, parent_id, "scope")
        scope = ScopeNode(
            id=scope_id,
            name=name,
            parent_id=parent_id,
            level_label=level_label,
            tenant_id=tenant_id,
        )
        self._scopes[scope_id] = scope
        # The subtree under the parent grew: users holding the parent are stale
        if parent_id is not None:
            parent = self._scopes[parent_id]
            self._notify("invalidate_by_scope", parent.level_label, parent_id)
        else:
            self._notify("invalidate_by_scope", level_label, scope_id)
        return scope

    def move_scope(self, scope_id: str, new_parent_id: Optional[str]) -> ScopeNode:
        scope = self._require(self._scopes, scope_id, "scope")
        if new_parent_id is not None:
            self._require(self._scopes, new_parent_id, "scope")
            if new_parent_id == scope_id or self._is_scope_below(new_parent_id, scope_id):
                raise ValueError(f"Cannot move scope {scope_id} under its own subtree")
        moved = replace(scope, parent_id=new_parent_id)
        self._scopes[scope_id] = moved
        # Access through the old and new ancestors changes for the whole subtree
        self._notify("invalidate_by_scope", scope.level_label, scope_id)
        for old_or_new in (scope.parent_id, new_parent_id):
            if old_or_new is not None:
                self._notify("invalidate_by_scope", self._scopes[old_or_new].level_label, old_or_new)
        return moved

    def remove_scope_node(self, scope_id: str) -> None:
        scope = self._require(self._scopes, scope_id, "scope")
        if any(s.parent_id == scope_id for s in self._scopes.values()):
            raise ValueError(f"Scope {scope_id} still has children")
        del self._scopes[scope_id]
        for user_id, assignments in self._user_scopes.items():
            self._user_scopes[user_id] = [a for a in assignments if a.scope_id != scope_id]
        # Bumps the node version and sweeps every user that referenced it
        self._notify("invalidate_by_scope", scope.level_label, scope_id)
        if scope.parent_id is not None:
            parent = self._scopes[scope.parent_id]
            self._notify("invalidate_by_scope", parent.level_label, parent.id)

    def rename_level(self, old_label: str, new_label: str) -> int:
        renamed = 0
        for scope_id, scope in list(self._scopes.items()):
            if scope.level_label == old_label:
                self._scopes[scope_id] = replace(scope, level_label=new_label)
                renamed += 1
        for user_id, assignments in self._user_scopes.items():
            self._user_scopes[user_id] = [
                replace(a, scope_type=new_label) if a.scope_type == old_label else a
                for a in assignments
            ]
        # Level semantics changed: drop every entry touching the old level
        self._notify("invalidate_by_scope_level", old_label)
        return renamed

    # -------------------------------------------------------------------------
    # Scope assignments
    # -------------------------------------------------------------------------

    def assign_scope(self, user_id: str, scope_type: str, scope_id: str) -> ScopeAssignment:
        """Assign a user to a scope. Assigning twice is a no-op."""
        assignment = ScopeAssignment(user_id=user_id, scope_type=scope_type, scope_id=scope_id)
        assignments = self._user_scopes.setdefault(user_id, [])
        if assignment not in assignments:
            assignments.append(assignment)
        # Only this user's cached assignments change
        self._notify("invalidate_user", user_id)
        return assignment

    def remove_scope(self, user_id: str, scope_type: str, scope_id: str) -> bool:
        assignments = self._user_scopes.get(user_id, [])
        remaining = [
            a for a in assignments if (a.scope_type, a.scope_id) != (scope_type, scope_id)
        ]
        self._user_scopes[user_id] = remaining
        self._notify("invalidate_user", user_id)
        return len(remaining) != len(assignments)

    def replace_user_scopes(self, user_id: str, scopes: Iterable[tuple]) -> List[ScopeAssignment]:
        """Replace all of a user's assignments with (scope_type, scope_id) pairs."""
        assignments: List[ScopeAssignment] = []
        for scope_type, scope_id in scopes:
            assignment = ScopeAssignment(user_id=user_id, scope_type=scope_type, scope_id=scope_id)
            if assignment not in assignments:
                assignments.append(assignment)
        self._user_scopes[user_id] = assignments
        self._notify("invalidate_user", user_id)
        return list(assignments)

    # -------------------------------------------------------------------------
    # Organizations
    # -------------------------------------------------------------------------

    def add_org(
        self,
        org_id: str,
        name: str,
        parent_id: Optional[str] = None,
        user_limit: int = 0,
        active: bool = True,
    ) -> OrgNode:
        """Create an org. Children inherit the parent's root (or the parent itself)."""
        if org_id in self._orgs:
            raise ValueError(f"Organization {org_id} already exists")
        root_org_id = None
        if parent_id is not None:
            parent = self._require(self._orgs, parent_id, "organization")
            if not parent.active:
                raise ValueError(f"Cannot add child to inactive organization {parent_id}")
            root_org_id = parent.root_org_id or parent.id
        org = OrgNode(
            id=org_id,
            name=name,
            parent_id=parent_id,
            root_org_id=root_org_id,
            active=active,
            user_limit=user_limit,
        )
        self._orgs[org_id] = org
        # New node in the org tree; the parent's subtree changed
        self._notify("invalidate_org", org_id)
        if parent_id is not None:
            self._notify("invalidate_org", parent_id)
        return org

    def update_org(
        self,
        org_id: str,
        name: Optional[str] = None,
        user_limit: Optional[int] = None,
    ) -> OrgNode:
        org = self._require(self._orgs, org_id, "organization")
        if not org.active:
            raise ValueError(f"Organization {org_id} is inactive")
        changes = {}
        if name is not None:
            changes["name"] = name
        if user_limit is not None:
            if user_limit < 0:
                raise ValueError("user_limit must not be negative")
            changes["user_limit"] = user_limit
        updated = replace(org, **changes)
        self._orgs[org_id] = updated
        # Cached entries naming this org as self, parent or root are stale
        self._notify("invalidate_org", org_id)
        return updated

    def deactivate_org(self, org_id: str) -> OrgNode:
        org = replace(self._require(self._orgs, org_id, "organization"), active=False)
        self._orgs[org_id] = org
        self._notify("invalidate_org", org_id)
        return org

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _notify(self, method: str, *args) -> None:
        if self.listener is None:
            logger.debug(f"No invalidation listener for {method}{args}")
            return
        getattr(self.listener, method)(*args)

    def _is_scope_below(self, candidate_id: str, ancestor_id: str) -> bool:
        seen: Set[str] = set()
        current = self._scopes.get(candidate_id)
        while current is not None and current.parent_id is not None:
            if current.parent_id in seen:
                break
            if current.parent_id == ancestor_id:
                return True
            seen.add(current.parent_id)
            current = self._scopes.get(current.parent_id)
        return False

    @staticmethod
    def _require(table: Dict, key: str, kind: str):
        record = table.get(key)
        if record is None:
            raise KeyError(f"Unknown {kind}: {key}")
        return record
