import logging

from fastapi import APIRouter, Depends, Query

from crmgate.auth.deps import AuthContext, get_auth_context, get_permission_resolver, require_admin
from crmgate.core.errors import PermissionDenied
from crmgate.permissions.schemas import (
    CheckResponse,
    OkResponse,
    RoleAssignRequest,
    SyncResponse,
    UserPermissions,
)
from crmgate.permissions.service import PermissionResolver

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_scope(
    ctx: AuthContext, resolver: PermissionResolver, user_id: str, *, admin_only: bool = False
) -> None:
    """Callers act on themselves, or as admin on users of their own tenant."""
    if ctx.user_id == user_id and not admin_only:
        return
    if not ctx.is_admin:
        raise PermissionDenied("Cannot act on another user's permissions")
    target = resolver.get_user(user_id)
    if target.tenant_id != ctx.tenant_id:
        logger.warning(
            "Cross-tenant access denied: user %s (tenant %s) -> user %s (tenant %s)",
            ctx.user_id,
            ctx.tenant_id,
            user_id,
            target.tenant_id,
        )
        raise PermissionDenied("User belongs to another tenant")


@router.post("/sync", response_model=SyncResponse)
def sync_roles(
    tenant_id: str | None = Query(default=None),
    admin: AuthContext = Depends(require_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    if tenant_id and tenant_id != admin.tenant_id:
        raise PermissionDenied("Cannot sync another tenant")
    count = resolver.sync_roles_and_permissions(admin.tenant_id)
    return SyncResponse(count=count, message=f"Successfully synced {count} roles from CRM")


@router.get("/check", response_model=CheckResponse)
def check_permission(
    user_id: str,
    entity_type: str,
    action: str,
    field_name: str | None = None,
    ctx: AuthContext = Depends(get_auth_context),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    _require_scope(ctx, resolver, user_id)
    allowed = resolver.check_user_permission(user_id, entity_type, action, field_name)
    return CheckResponse(allowed=allowed)


@router.get("/user/{user_id}", response_model=UserPermissions)
def user_permissions(
    user_id: str,
    ctx: AuthContext = Depends(get_auth_context),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    _require_scope(ctx, resolver, user_id)
    return resolver.get_user_permissions(user_id)


@router.post("/user/{user_id}/clear-cache", response_model=OkResponse)
def clear_cache(
    user_id: str,
    admin: AuthContext = Depends(require_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    _require_scope(admin, resolver, user_id, admin_only=True)
    resolver.clear_user_permission_cache(user_id)
    return OkResponse()


@router.post("/user/{user_id}/roles", response_model=OkResponse)
def assign_role(
    user_id: str,
    payload: RoleAssignRequest,
    admin: AuthContext = Depends(require_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    _require_scope(admin, resolver, user_id, admin_only=True)
    resolver.assign_role(user_id, payload.role_external_id)
    return OkResponse()


@router.delete("/user/{user_id}/roles/{role_external_id}", response_model=OkResponse)
def unassign_role(
    user_id: str,
    role_external_id: str,
    admin: AuthContext = Depends(require_admin),
    resolver: PermissionResolver = Depends(get_permission_resolver),
):
    _require_scope(admin, resolver, user_id, admin_only=True)
    resolver.unassign_role(user_id, role_external_id)
    return OkResponse()
