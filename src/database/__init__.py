"""
Database layer for the access-control store.

This module provides:
- SQLAlchemy ORM models for users, roles, scopes and organizations
- Async engine and session factory helpers
"""

from .models import (
    Base,
    OrgRecord,
    PermissionRecord,
    RolePermissionRecord,
    RoleRecord,
    ScopeRecord,
    UserRecord,
    UserRoleRecord,
    UserScopeRecord,
)
from .async_engine import create_engine, get_session_factory, init_database

__all__ = [
    "Base",
    "OrgRecord",
    "PermissionRecord",
    "RolePermissionRecord",
    "RoleRecord",
    "ScopeRecord",
    "UserRecord",
    "UserRoleRecord",
    "UserScopeRecord",
    "create_engine",
    "get_session_factory",
    "init_database",
]
