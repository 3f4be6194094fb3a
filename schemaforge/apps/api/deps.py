from __future__ import annotations

import logging

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from schemaforge.core.config import get_settings
from schemaforge.domain.scopes import Scope, ScopeContext
from schemaforge.services.tables import TableService


logger = logging.getLogger(__name__)

ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "editor": 2,
    "admin": 3,
}
PLATFORM_ADMIN_ROLE = "platform_admin"


class Principal(BaseModel):
    # Resolved by the external authorization layer and forwarded as headers.
    role: str
    scope: Scope
    tenant_id: str | None = None
    instance_id: str | None = None

    def context(self) -> ScopeContext:
        return ScopeContext(scope=self.scope, tenant_id=self.tenant_id, instance_id=self.instance_id)


def role_allows(*, role: str, minimum_role: str) -> bool:
    # platform_admin passes every check only when the bypass is explicitly enabled.
    if role == PLATFORM_ADMIN_ROLE:
        allowed = get_settings().authz_platform_admin_bypass
        if allowed:
            logger.warning("authz_platform_admin_bypass_used minimum_role=%s", minimum_role)
        return allowed
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def get_principal(
    x_role: str | None = Header(default=None, alias="X-Role"),
    x_scope: str | None = Header(default=None, alias="X-Scope"),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-Id"),
    x_instance_id: str | None = Header(default=None, alias="X-Instance-Id"),
) -> Principal:
    if not x_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing X-Role header"},
        )
    if not x_scope:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "SCOPE_REQUIRED", "message": "Missing X-Scope header"},
        )
    try:
        scope = Scope.parse(x_scope)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": f"Unknown scope: {x_scope}"},
        ) from exc
    return Principal(
        role=x_role.strip().lower(),
        scope=scope,
        tenant_id=x_tenant_id or None,
        instance_id=x_instance_id or None,
    )


def require_role(minimum_role: str):
    # Dependency factory enforcing the minimum role per route.
    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            logger.info("authz_denied role=%s minimum_role=%s", principal.role, minimum_role)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "AUTH_FORBIDDEN", "message": "Insufficient role for this operation"},
            )
        return principal

    return _dependency


def get_table_service(request: Request) -> TableService:
    return request.app.state.table_service
