from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from crmgate.auth.deps import AuthContext, get_auth_context, get_auth_service
from crmgate.auth.models import UserPreference
from crmgate.auth.schemas import (
    LoginRequest,
    LogoutRequest,
    OkResponse,
    ProfileResponse,
    RefreshRequest,
    TokenResponse,
)
from crmgate.auth.service import AuthService
from crmgate.db.session import get_db

router = APIRouter()
user_router = APIRouter()


def _client_meta(request: Request) -> tuple[str | None, str | None]:
    client_ip = request.client.host if request.client else None
    return client_ip, request.headers.get("user-agent")


@router.post("/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
):
    client_ip, user_agent = _client_meta(request)
    bundle = auth.login(
        payload.username,
        payload.password,
        tenant_id=payload.tenant_id,
        client_ip=client_ip,
        user_agent=user_agent,
    )
    return TokenResponse.from_bundle(bundle)


@router.post("/refresh", response_model=TokenResponse)
def refresh(
    payload: RefreshRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
):
    client_ip, user_agent = _client_meta(request)
    bundle = auth.refresh_token(payload.refresh_token, client_ip=client_ip, user_agent=user_agent)
    return TokenResponse.from_bundle(bundle)


@router.post("/logout", response_model=OkResponse)
def logout(payload: LogoutRequest, auth: AuthService = Depends(get_auth_service)):
    auth.logout(payload.token)
    return OkResponse()


@router.post("/logout-all", response_model=OkResponse)
def logout_all(
    ctx: AuthContext = Depends(get_auth_context),
    auth: AuthService = Depends(get_auth_service),
):
    auth.logout_all(ctx.user_id)
    return OkResponse()


@user_router.get("/profile", response_model=ProfileResponse)
def profile(ctx: AuthContext = Depends(get_auth_context), db: Session = Depends(get_db)):
    prefs = db.query(UserPreference).filter(UserPreference.user_id == ctx.user_id).first()
    user = ctx.user
    return ProfileResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        user_name=user.user_name,
        role=ctx.role,
        is_admin=ctx.is_admin,
        last_login_at=user.last_login_at,
        preferences=prefs.preferences if prefs else {},
    )
