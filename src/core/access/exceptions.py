"""
Access-control exceptions.

Expected "no access" outcomes are returned as decision fields. These
exceptions cover programmer errors, storage failures, corrupt hierarchy
data, and the opt-in strict mode of the facade.
"""

from typing import Iterable, List, Optional


class AccessControlError(Exception):
    """Base class for access-control errors."""
    pass


class HierarchyIntegrityError(AccessControlError):
    """Raised when hierarchy rows contain a cycle or exceed the depth guard."""

    def __init__(self, node_id: str, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Hierarchy integrity violation at node {node_id}: {reason}")


class AccessStorageError(AccessControlError):
    """
    Raised when the storage collaborator fails.

    The decision is indeterminate: callers must fail closed and must not
    report the outcome as a plain denial.
    """

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"Storage operation '{operation}' failed: {message}")


class PermissionDeniedError(AccessControlError):
    """Raised in strict mode when required permissions are missing."""

    def __init__(
        self,
        missing_permissions: Iterable[str],
        user_permissions: Iterable[str],
        required_permissions: Iterable[str],
        user_friendly_message: Optional[str] = None,
    ):
        self.missing_permissions: List[str] = list(missing_permissions)
        self.user_permissions: List[str] = sorted(user_permissions)
        self.required_permissions: List[str] = list(required_permissions)
        self.user_friendly_message = user_friendly_message
        super().__init__(f"Missing permissions: {', '.join(self.missing_permissions)}")


class ScopeAccessDeniedError(AccessControlError):
    """Raised in strict mode when the target scope is not accessible."""

    def __init__(self, scope_type: str, scope_id: str, user_scopes: Iterable[object] = ()):
        self.scope_type = scope_type
        self.scope_id = scope_id
        self.user_scopes = list(user_scopes)
        super().__init__(f"Access denied to scope: {scope_type} / {scope_id}")


class OrgRequiredError(AccessControlError):
    """Raised when an organization is required but the user has none."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} is not assigned to an organization")
