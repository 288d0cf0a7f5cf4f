"""
FastAPI dependencies for access decisions.

The external auth layer sets ``request.state.user_id``; these dependencies
turn an AccessDecision into HTTP outcomes:
- 401: unauthenticated
- 403: missing permissions, scope or org denied
- 503: decision indeterminate (storage failure or corrupt hierarchy rows),
  logged and failed closed
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status

from .exceptions import AccessStorageError, HierarchyIntegrityError
from .models import AccessDecision
from .service import AccessDecisionService
from .storage import AccessStorage

logger = logging.getLogger(__name__)


def install_access_control(
    app: FastAPI,
    storage: AccessStorage,
    settings: Optional[Any] = None,
) -> AccessDecisionService:
    """Create the decision service, wire storage invalidation, attach to app.state."""
    service = AccessDecisionService(storage, settings=settings)
    storage.set_listener(service)
    app.state.access_service = service
    return service


def get_access_service(request: Request) -> AccessDecisionService:
    service = getattr(request.app.state, "access_service", None)
    if service is None:
        logger.error("Access control is not installed on this application")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Access control unavailable",
        )
    return service


def get_current_user_id(request: Request) -> Optional[str]:
    return getattr(request.state, "user_id", None)


def _scope_id_from_request(request: Request, scope_param: str) -> Optional[str]:
    return request.path_params.get(scope_param) or request.query_params.get(scope_param)


async def _decide(
    service: AccessDecisionService,
    user_id: Optional[str],
    permissions: Iterable[str],
    scope_type: Optional[str] = None,
    scope_id: Optional[str] = None,
    target_org_id: Optional[str] = None,
) -> AccessDecision:
    try:
        decision = await service.check_access(
            user_id,
            permissions,
            scope_type,
            scope_id,
            target_org_id=target_org_id,
        )
    except (AccessStorageError, HierarchyIntegrityError):
        logger.exception(f"Access decision failed for user {user_id}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Access decision unavailable",
        )

    if not decision.authenticated:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    if not decision.permission_ok:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Missing permissions: {', '.join(decision.missing_permissions)}",
        )
    if decision.scope_ok is False:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Access denied to scope: {scope_type} / {scope_id}",
        )
    if decision.org_ok is False:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Access denied to organization: {target_org_id}",
        )
    return decision


def require_access(
    permissions: Iterable[str] = (),
    scope_type: Optional[str] = None,
    scope_param: str = "scope_id",
):
    """
    Require permissions and, when scope_type is given, access to the scope
    named by the ``scope_param`` path or query parameter.
    """
    required = list(permissions)

    async def dependency(
        request: Request,
        user_id: Optional[str] = Depends(get_current_user_id),
        service: AccessDecisionService = Depends(get_access_service),
    ) -> AccessDecision:
        scope_id = _scope_id_from_request(request, scope_param) if scope_type else None
        if scope_type and not scope_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Missing scope parameter: {scope_param}",
            )
        decision = await _decide(service, user_id, required, scope_type, scope_id)
        request.state.access_decision = decision
        return decision

    return dependency


class RequireOrgAccess:
    """Class-based dependency: the user's org must contain the requested org."""

    def __init__(self, permissions: Iterable[str] = (), org_param: str = "org_id"):
        self.permissions = list(permissions)
        self.org_param = org_param

    async def __call__(
        self,
        request: Request,
        user_id: Optional[str] = Depends(get_current_user_id),
        service: AccessDecisionService = Depends(get_access_service),
    ) -> AccessDecision:
        org_id = _scope_id_from_request(request, self.org_param)
        if not org_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Missing organization parameter: {self.org_param}",
            )
        decision = await _decide(service, user_id, self.permissions, target_org_id=org_id)
        request.state.access_decision = decision
        return decision
