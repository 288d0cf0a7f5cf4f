"""
SQLAlchemy ORM Models for the access-control store.

Tables:
- access_users: user records (active flag, org membership)
- access_roles / access_permissions / access_role_permissions: RBAC catalog
- access_user_roles: user-to-role assignments
- access_scopes: HRBAC scope hierarchy rows (parent id + level label)
- access_user_scopes: direct user-to-scope assignments
- access_orgs: organization hierarchy rows (root id, active, user limit)

Identifiers are opaque strings. The hierarchy tables only store the parent
id; trees are built in memory by core.access.hierarchy.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, Integer,
    String, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


# =============================================================================
# USERS AND ORGANIZATIONS
# =============================================================================

class OrgRecord(Base):
    """Organization hierarchy row. root_org_id is NULL for root orgs."""
    __tablename__ = "access_orgs"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    parent_org_id = Column(String(64), ForeignKey("access_orgs.id"), nullable=True)
    root_org_id = Column(String(64), ForeignKey("access_orgs.id"), nullable=True)
    user_limit = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("user_limit >= 0", name="ck_access_orgs_user_limit"),
        Index("ix_access_orgs_root", "root_org_id"),
        Index("ix_access_orgs_parent", "parent_org_id"),
    )


class UserRecord(Base):
    __tablename__ = "access_users"

    id = Column(String(64), primary_key=True, default=_new_id)
    email = Column(String(255), nullable=True, unique=True)
    name = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    org_id = Column(String(64), ForeignKey("access_orgs.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_access_users_org_active", "org_id", "active"),
    )


# =============================================================================
# RBAC CATALOG
# =============================================================================

class RoleRecord(Base):
    __tablename__ = "access_roles"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False, unique=True)


class PermissionRecord(Base):
    __tablename__ = "access_permissions"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False, unique=True)
    description = Column(String(500), nullable=True)


class RolePermissionRecord(Base):
    __tablename__ = "access_role_permissions"

    role_id = Column(String(64), ForeignKey("access_roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id = Column(
        String(64), ForeignKey("access_permissions.id", ondelete="CASCADE"), primary_key=True
    )


class UserRoleRecord(Base):
    __tablename__ = "access_user_roles"

    user_id = Column(String(64), ForeignKey("access_users.id", ondelete="CASCADE"), primary_key=True)
    role_id = Column(String(64), ForeignKey("access_roles.id", ondelete="CASCADE"), primary_key=True)


# =============================================================================
# SCOPE HIERARCHY
# =============================================================================

class ScopeRecord(Base):
    """Scope hierarchy row. level is a free-text tag such as "HQ"."""
    __tablename__ = "access_scopes"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    level = Column(String(100), nullable=False)
    parent_id = Column(String(64), ForeignKey("access_scopes.id"), nullable=True)
    tenant_id = Column(String(64), ForeignKey("access_orgs.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_access_scopes_parent", "parent_id"),
        Index("ix_access_scopes_tenant", "tenant_id"),
    )


class UserScopeRecord(Base):
    """One direct assignment; unique per (user, scope_type, scope_id)."""
    __tablename__ = "access_user_scopes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("access_users.id", ondelete="CASCADE"), nullable=False)
    scope_type = Column(String(100), nullable=False)
    scope_id = Column(String(64), ForeignKey("access_scopes.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "scope_type", "scope_id", name="uq_access_user_scope"),
        Index("ix_access_user_scopes_user", "user_id"),
    )
