import logging
from dataclasses import dataclass, field

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from crmgate.auth.models import User
from crmgate.auth.service import AuthService
from crmgate.core.errors import AuthenticationFailed, AuthenticationRequired, AuthError, PermissionDenied
from crmgate.db.session import get_db
from crmgate.permissions.service import PermissionResolver

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    """What every handler behind the guard may rely on."""

    user: User
    tenant_id: str
    role: str
    is_admin: bool
    user_id: str
    token: str = field(repr=False, default="")


def get_cache(request: Request):
    return request.app.state.cache


def get_auth_service(db: Session = Depends(get_db), cache=Depends(get_cache)) -> AuthService:
    return AuthService(db, cache)


def get_permission_resolver(
    db: Session = Depends(get_db), cache=Depends(get_cache)
) -> PermissionResolver:
    return PermissionResolver(db, cache)


def get_auth_context(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    auth: AuthService = Depends(get_auth_service),
) -> AuthContext:
    if not creds or not creds.credentials:
        logger.warning("Missing or invalid Authorization header on %s", request.url.path)
        raise AuthenticationRequired()

    try:
        verified = auth.verify_token(creds.credentials)
    except AuthError as e:
        logger.info("Token verification failed: %s", e.message)
        raise AuthenticationFailed(f"Authentication failed: {e.message}") from e

    ctx = AuthContext(
        user=verified.user,
        tenant_id=verified.user.tenant_id,
        role=verified.role,
        is_admin=verified.user.is_admin,
        user_id=verified.user.id,
        token=creds.credentials,
    )
    request.state.auth = ctx
    logger.debug("Authenticated request user_id=%s tenant_id=%s", ctx.user_id, ctx.tenant_id)
    return ctx


def require_admin(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.is_admin:
        logger.warning("Admin endpoint denied for user %s", ctx.user_id)
        raise PermissionDenied("Administrator required")
    return ctx


def require_permission(entity: str, action: str, field_name: str | None = None):
    def _dep(
        ctx: AuthContext = Depends(get_auth_context),
        resolver: PermissionResolver = Depends(get_permission_resolver),
    ) -> AuthContext:
        if ctx.is_admin:
            return ctx
        if not resolver.check_user_permission(ctx.user_id, entity, action, field_name):
            logger.warning(
                "Permission denied user_id=%s entity=%s action=%s field=%s",
                ctx.user_id,
                entity,
                action,
                field_name,
            )
            raise PermissionDenied()
        return ctx

    return _dep
