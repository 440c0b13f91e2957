from datetime import datetime, timezone

from pydantic import BaseModel, Field

from crmgate.auth.service import TokenBundle


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024)
    tenant_id: str | None = Field(default=None, max_length=64)


class UserOut(BaseModel):
    id: str
    name: str | None = None
    email: str
    user_name: str
    role: str
    is_admin: bool


class TokenResponse(BaseModel):
    token: str
    refresh_token: str
    token_type: str = "bearer"
    user: UserOut
    expires_at: int  # epoch milliseconds

    @classmethod
    def from_bundle(cls, bundle: TokenBundle) -> "TokenResponse":
        expires_at = bundle.expires_at.replace(tzinfo=timezone.utc)
        return cls(
            token=bundle.token,
            refresh_token=bundle.refresh_token,
            user=UserOut(**vars(bundle.user)),
            expires_at=int(expires_at.timestamp() * 1000),
        )


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=20)


class LogoutRequest(BaseModel):
    token: str = Field(min_length=20)


class OkResponse(BaseModel):
    success: bool = True


class ProfileResponse(UserOut):
    last_login_at: datetime | None = None
    preferences: dict = Field(default_factory=dict)
