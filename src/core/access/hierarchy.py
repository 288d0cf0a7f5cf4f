"""
Hierarchy Tree Builder.

Turns flat scope or organization rows (id + nullable parent id) into a
rooted forest and answers ancestor/descendant queries. Pure data
transform, no caching.

Both ScopeNode and OrgNode work here: anything with ``id``, ``name``,
``parent_id`` and ``level_label`` attributes is a node.
"""

import logging
from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Set

from .exceptions import HierarchyIntegrityError
from .models import HierarchyTreeNode

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 32


def _dedupe(flat_nodes: Iterable[Any]) -> Dict[str, Any]:
    """Index nodes by id, keeping the first occurrence."""
    by_id: Dict[str, Any] = {}
    for node in flat_nodes:
        if node.id in by_id:
            logger.warning(f"Duplicate hierarchy row {node.id} ignored")
            continue
        by_id[node.id] = node
    return by_id


def _group_children(by_id: Dict[str, Any]) -> Dict[Optional[str], List[Any]]:
    groups: Dict[Optional[str], List[Any]] = {}
    for node in by_id.values():
        groups.setdefault(node.parent_id, []).append(node)
    return groups


# =============================================================================
# TREE BUILDING
# =============================================================================

def build_tree(flat_nodes: Iterable[Any], max_depth: int = DEFAULT_MAX_DEPTH) -> List[HierarchyTreeNode]:
    """
    Build a forest from flat hierarchy rows.

    Rows are grouped by parent id once, then attached top-down from the
    roots. Children keep their input order, so identical input always
    yields identical output.

    Rows whose parent does not exist, and rows trapped in a parent cycle,
    are never reached from a root: they are skipped with a warning.

    Args:
        flat_nodes: Scope or org rows
        max_depth: Deepest allowed level (roots are depth 0)

    Returns:
        Root tree nodes in input order

    Raises:
        HierarchyIntegrityError: If a branch is deeper than max_depth
    """
    by_id = _dedupe(flat_nodes)
    groups = _group_children(by_id)

    roots = [HierarchyTreeNode(node=node, depth=0) for node in groups.get(None, [])]
    visited: Set[str] = set()
    stack = list(roots)

    while stack:
        current = stack.pop()
        if current.id in visited:
            continue
        visited.add(current.id)

        for child in groups.get(current.id, []):
            if child.id in visited:
                continue
            depth = current.depth + 1
            if depth > max_depth:
                raise HierarchyIntegrityError(
                    child.id, f"depth {depth} exceeds maximum of {max_depth}"
                )
            child_node = HierarchyTreeNode(node=child, depth=depth)
            current.children.append(child_node)
            stack.append(child_node)

    skipped = [node_id for node_id in by_id if node_id not in visited]
    for node_id in skipped:
        parent_id = by_id[node_id].parent_id
        if parent_id not in by_id:
            logger.warning(f"Skipping orphan hierarchy row {node_id}: parent {parent_id} not found")
        else:
            logger.warning(
                f"Skipping unreachable hierarchy row {node_id}: "
                f"cycle or orphaned ancestor above {parent_id}"
            )

    logger.debug(f"Built hierarchy tree: {len(roots)} roots, {len(visited)} nodes")
    return roots


# =============================================================================
# INDEX
# =============================================================================

class HierarchyIndex:
    """
    Id and parent lookups over one hierarchy.

    Ancestor walks are guarded by a visited set and ``max_depth`` so corrupt
    rows raise HierarchyIntegrityError instead of looping.
    """

    def __init__(self, nodes: Iterable[Any], max_depth: int = DEFAULT_MAX_DEPTH):
        self.max_depth = max_depth
        self._nodes = _dedupe(nodes)
        self._children = _group_children(self._nodes)

    def get(self, node_id: Optional[str]) -> Optional[Any]:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self):
        return iter(self._nodes.values())

    def roots(self) -> List[Any]:
        return list(self._children.get(None, []))

    def children_of(self, node_id: str) -> List[Any]:
        return list(self._children.get(node_id, []))

    def ancestors_of(self, node_id: str) -> List[Any]:
        """
        Ordered ancestors, direct parent first, root last.

        A parent id that points outside the index ends the walk. Unknown
        node ids have no ancestors.

        Raises:
            HierarchyIntegrityError: On a parent cycle or depth overflow
        """
        node = self._nodes.get(node_id)
        if node is None:
            return []

        ancestors: List[Any] = []
        seen = {node_id}
        parent_id = node.parent_id
        while parent_id is not None:
            if parent_id in seen:
                raise HierarchyIntegrityError(node_id, f"cycle through {parent_id}")
            parent = self._nodes.get(parent_id)
            if parent is None:
                break
            ancestors.append(parent)
            if len(ancestors) > self.max_depth:
                raise HierarchyIntegrityError(
                    node_id, f"ancestor chain exceeds maximum depth of {self.max_depth}"
                )
            seen.add(parent_id)
            parent_id = parent.parent_id
        return ancestors

    def is_descendant(self, candidate_id: str, ancestor_id: str) -> bool:
        """True if ancestor_id is a strict ancestor of candidate_id."""
        if candidate_id == ancestor_id or ancestor_id not in self._nodes:
            return False
        return any(a.id == ancestor_id for a in self.ancestors_of(candidate_id))

    def descendants_of(self, node_id: str) -> List[Any]:
        """All descendants in breadth-first order, excluding the node itself."""
        result: List[Any] = []
        visited = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for child in self._children.get(current, []):
                if child.id in visited:
                    continue
                visited.add(child.id)
                result.append(child)
                queue.append(child.id)
        return result

    def root_of(self, node_id: str) -> Optional[Any]:
        node = self._nodes.get(node_id)
        if node is None:
            return None
        ancestors = self.ancestors_of(node_id)
        return ancestors[-1] if ancestors else node

    def levels(self) -> Set[str]:
        """Level labels present in the hierarchy."""
        return {node.level_label for node in self._nodes.values() if node.level_label}

    def tree(self) -> List[HierarchyTreeNode]:
        return build_tree(self._nodes.values(), max_depth=self.max_depth)


# =============================================================================
# ORGANIZATION HELPERS
# =============================================================================

def resolve_root_org_id(index: HierarchyIndex, org_id: str) -> Optional[str]:
    """
    Root org id of an org, or None when the org is itself a root.

    Uses the memoized ``root_org_id`` where present: a child inherits its
    parent's root, or the parent itself when the parent is a root.
    """
    org = index.get(org_id)
    if org is None or org.parent_id is None:
        return None
    if getattr(org, "root_org_id", None):
        return org.root_org_id

    ancestors = index.ancestors_of(org_id)
    if not ancestors:
        # Parent row is missing from the index
        return org.parent_id
    for ancestor in ancestors:
        if getattr(ancestor, "root_org_id", None):
            return ancestor.root_org_id
        if ancestor.parent_id is None:
            return ancestor.id
    return ancestors[-1].id


def filter_active(orgs: Iterable[Any]) -> List[Any]:
    """Drop inactive orgs."""
    return [org for org in orgs if getattr(org, "active", True)]
