"""SQLAlchemy storage collaborator.

Read-only implementation of AccessStorage over the access_* tables in
database.models, using async sessions. Each fetch opens its own session.
Writes happen elsewhere and must call the invalidation entry points of
the AccessDecisionService themselves.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    OrgRecord,
    PermissionRecord,
    RolePermissionRecord,
    RoleRecord as RoleRow,
    ScopeRecord,
    UserRecord as UserRow,
    UserRoleRecord,
    UserScopeRecord,
)

from .models import OrgNode, RoleRecord, ScopeAssignment, ScopeNode, UserRecord
from .storage import AccessStorage

logger = logging.getLogger(__name__)


class SQLAlchemyAccessStorage(AccessStorage):
    """
    Access storage backed by a relational database.

    Args:
        session_factory: Callable returning an AsyncSession usable as an
            async context manager (e.g. an ``async_sessionmaker``)
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def fetch_roles_with_permissions(self) -> List[RoleRecord]:
        async with self._session_factory() as session:
            roles = (await session.execute(select(RoleRow).order_by(RoleRow.name))).scalars().all()
            pairs = await session.execute(
                select(RolePermissionRecord.role_id, PermissionRecord.name).join(
                    PermissionRecord,
                    PermissionRecord.id == RolePermissionRecord.permission_id,
                )
            )
            permissions: Dict[str, Set[str]] = {}
            for role_id, permission_name in pairs.all():
                permissions.setdefault(role_id, set()).add(permission_name)

        return [
            RoleRecord(id=role.id, name=role.name, permissions=frozenset(permissions.get(role.id, ())))
            for role in roles
        ]

    async def fetch_user(self, user_id: str) -> Optional[UserRecord]:
        async with self._session_factory() as session:
            row = await session.get(UserRow, user_id)
            if row is None:
                return None
            return UserRecord(
                id=row.id,
                active=bool(row.active),
                org_id=row.org_id,
                email=row.email,
                name=row.name,
            )

    async def fetch_user_role_ids(self, user_id: str) -> List[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserRoleRecord.role_id).where(UserRoleRecord.user_id == user_id)
            )
            return list(result.scalars().all())

    async def fetch_user_scope_assignments(self, user_id: str) -> List[ScopeAssignment]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserScopeRecord)
                .where(UserScopeRecord.user_id == user_id)
                .order_by(UserScopeRecord.id)
            )
            return [
                ScopeAssignment(user_id=row.user_id, scope_type=row.scope_type, scope_id=row.scope_id)
                for row in result.scalars().all()
            ]

    async def fetch_scope_tree(self, tenant_id: Optional[str] = None) -> List[ScopeNode]:
        stmt = select(ScopeRecord).order_by(ScopeRecord.created_at, ScopeRecord.id)
        if tenant_id:
            stmt = stmt.where(ScopeRecord.tenant_id == tenant_id)

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        logger.debug(f"Fetched {len(rows)} scope rows (tenant={tenant_id or 'all'})")
        return [
            ScopeNode(
                id=row.id,
                name=row.name,
                parent_id=row.parent_id,
                level_label=row.level,
                tenant_id=row.tenant_id,
            )
            for row in rows
        ]

    async def fetch_org_tree(
        self,
        root_org_id: Optional[str] = None,
        include_inactive: bool = False,
    ) -> List[OrgNode]:
        stmt = select(OrgRecord).order_by(OrgRecord.created_at, OrgRecord.id)
        if root_org_id:
            stmt = stmt.where(
                or_(OrgRecord.id == root_org_id, OrgRecord.root_org_id == root_org_id)
            )
        if not include_inactive:
            stmt = stmt.where(OrgRecord.active.is_(True))

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            OrgNode(
                id=row.id,
                name=row.name,
                parent_id=row.parent_org_id,
                root_org_id=row.root_org_id,
                active=bool(row.active),
                user_limit=row.user_limit or 0,
            )
            for row in rows
        ]

    async def count_active_users(self, org_ids: Iterable[str]) -> int:
        org_ids = list(org_ids)
        if not org_ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(UserRow.id)).where(
                    UserRow.org_id.in_(org_ids),
                    UserRow.active.is_(True),
                )
            )
            return int(result.scalar_one())
