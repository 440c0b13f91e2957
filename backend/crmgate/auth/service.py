import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crmgate.audit.service import write_login_attempt
from crmgate.auth.login_guard import RateLimiter
from crmgate.auth.models import RefreshToken, User, UserPreference, UserSession
from crmgate.auth.security import ACCESS, REFRESH, TokenCodec, codec as default_codec
from crmgate.core.config import settings
from crmgate.core.errors import (
    AuthenticationFailed,
    InvalidCredentials,
    RefreshTokenExpired,
    RefreshTokenNotFound,
    SessionExpired,
    SessionNotFound,
    UserNotFound,
)
from crmgate.crm.client import CrmClient, CrmError, basic_auth_header, crm_auth_key, crm_client_for_tenant
from crmgate.permissions.models import (
    EXTERNAL_ADMIN_ROLE,
    EXTERNAL_USER_ROLE,
    SYNTHETIC_ROLES,
    Role,
    UserRole,
)
from crmgate.permissions.service import permissions_cache_key
from crmgate.tenants.models import Tenant
from crmgate.tenants.service import resolve_tenant

logger = logging.getLogger(__name__)

ADMIN_TYPES = {"admin", "administrator"}
DEFAULT_ROLE_NAME = "user"


def is_admin_type(user_type: Any) -> bool:
    return isinstance(user_type, str) and user_type.strip().lower() in ADMIN_TYPES


@dataclass
class UserSummary:
    id: str
    name: str | None
    email: str
    user_name: str
    role: str
    is_admin: bool


@dataclass
class TokenBundle:
    token: str
    refresh_token: str
    user: UserSummary
    expires_at: datetime


@dataclass
class VerifiedToken:
    user: User
    role: str
    claims: dict = field(default_factory=dict)


def summarize(user: User, role: str) -> UserSummary:
    return UserSummary(
        id=user.id,
        name=user.name,
        email=user.email,
        user_name=user.user_name,
        role=role,
        is_admin=user.is_admin,
    )


def primary_role_name(db: Session, user_id: str) -> str:
    row = (
        db.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .order_by(UserRole.created_at, UserRole.id)
        .first()
    )
    return row[0] if row else DEFAULT_ROLE_NAME


def ensure_role(db: Session, external_id: str) -> Role:
    role = db.query(Role).filter(Role.external_id == external_id).first()
    if role:
        return role
    role = Role(id=f"r_{secrets.token_hex(10)}", external_id=external_id, name=external_id, permissions={})
    db.add(role)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        role = db.query(Role).filter(Role.external_id == external_id).one()
    return role


class AuthService:
    """Login, token refresh/verification and logout against the CRM.

    Session rows are authoritative: a token verifies only while its row exists
    and has not passed ``expires_at``.
    """

    def __init__(
        self,
        db: Session,
        cache,
        *,
        codec: TokenCodec = default_codec,
        client_factory: Callable[..., CrmClient] = crm_client_for_tenant,
        limiter: RateLimiter | None = None,
        credential_ttl_seconds: int | None = None,
        revoke_refresh_on_logout_all: bool | None = None,
    ) -> None:
        self.db = db
        self.cache = cache
        self.codec = codec
        self.client_factory = client_factory
        self.limiter = limiter or RateLimiter(cache)
        self.credential_ttl_seconds = (
            credential_ttl_seconds
            if credential_ttl_seconds is not None
            else settings.CRM_CREDENTIAL_TTL_SECONDS
        )
        self.revoke_refresh_on_logout_all = (
            revoke_refresh_on_logout_all
            if revoke_refresh_on_logout_all is not None
            else settings.REVOKE_REFRESH_ON_LOGOUT_ALL
        )

    # --- login ---

    def _verify_credentials(self, tenant: Tenant, username: str, auth_header: str) -> dict:
        client = self.client_factory(tenant, auth_header=auth_header)
        try:
            users = client.list_users(user_name=username)
        except CrmError as e:
            if e.status is not None and e.status < 500:
                raise InvalidCredentials() from e
            raise

        matched = next((u for u in users if u.get("userName") == username), None)
        if not matched:
            raise InvalidCredentials()

        try:
            details = client.get_user(matched["id"])
        except CrmError as e:
            raise CrmError("Failed to retrieve user details", status=e.status) from e
        return {**matched, **details, "id": matched["id"]}

    def _upsert_user(self, tenant: Tenant, details: dict, username: str, is_admin: bool) -> User:
        now = datetime.utcnow()
        external_id = details["id"]
        user = (
            self.db.query(User)
            .filter(User.tenant_id == tenant.id, User.external_id == external_id)
            .first()
        )
        if user is None:
            user = User(
                id=f"u_{secrets.token_hex(12)}",
                tenant_id=tenant.id,
                external_id=external_id,
                email=details.get("emailAddress") or f"{username}@example.com",
                user_name=details.get("userName") or username,
                name=details.get("name"),
                is_admin=is_admin,
                last_login_at=now,
            )
            self.db.add(user)
            self.db.add(
                UserPreference(
                    id=f"up_{secrets.token_hex(12)}",
                    user_id=user.id,
                    tenant_id=tenant.id,
                    preferences={},
                )
            )
            try:
                self.db.commit()
                logger.info("Created local user %s for CRM user %s", user.id, external_id)
                return user
            except IntegrityError:
                # A concurrent first login won the insert.
                self.db.rollback()
                user = (
                    self.db.query(User)
                    .filter(User.tenant_id == tenant.id, User.external_id == external_id)
                    .one()
                )

        admin_changed = user.is_admin != is_admin
        if admin_changed:
            user.is_admin = is_admin
        user.last_login_at = now
        self.db.commit()
        if admin_changed:
            self.cache.delete(permissions_cache_key(user.id))
            logger.info("Admin flag for user %s changed to %s", user.id, is_admin)
        return user

    def _assign_synthetic_role(self, user: User, is_admin: bool) -> None:
        target = ensure_role(self.db, EXTERNAL_ADMIN_ROLE if is_admin else EXTERNAL_USER_ROLE)
        synthetic_ids = [
            r.id for r in self.db.query(Role).filter(Role.external_id.in_(SYNTHETIC_ROLES)).all()
        ]
        held = (
            self.db.query(UserRole)
            .filter(UserRole.user_id == user.id, UserRole.role_id.in_(synthetic_ids))
            .all()
        )
        if any(ur.role_id == target.id for ur in held):
            return

        # Only the login-managed slot is replaced; synced role assignments stay.
        for ur in held:
            self.db.delete(ur)
        self.db.flush()
        self.db.add(UserRole(id=f"ur_{secrets.token_hex(12)}", user_id=user.id, role_id=target.id))
        self.db.commit()
        self.cache.delete(permissions_cache_key(user.id))
        logger.info("Assigned role %s to user %s", target.name, user.id)

    def _open_session(
        self,
        user: User,
        tenant_id: str,
        role: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[str, datetime]:
        token, expires_at = self.codec.create_access_token(
            user_id=user.id, tenant_id=tenant_id, role=role, is_admin=user.is_admin
        )
        self.db.add(
            UserSession(
                id=f"s_{secrets.token_hex(12)}",
                token=token,
                user_id=user.id,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        return token, expires_at

    def login(
        self,
        username: str,
        password: str,
        tenant_id: str | None = None,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> TokenBundle:
        if not username:
            raise InvalidCredentials("Username is required")

        self.limiter.hit(username)
        tenant = resolve_tenant(self.db, tenant_id)

        try:
            auth_header = basic_auth_header(username, password)
            details = self._verify_credentials(tenant, username, auth_header)
            is_admin = is_admin_type(details.get("type"))

            user = self._upsert_user(tenant, details, username, is_admin)
            self._assign_synthetic_role(user, is_admin)
            role = primary_role_name(self.db, user.id)

            token, expires_at = self._open_session(user, tenant.id, role, client_ip, user_agent)
            refresh_token, refresh_expires_at = self.codec.create_refresh_token(user_id=user.id)
            self.db.add(
                RefreshToken(
                    id=f"rt_{secrets.token_hex(10)}",
                    token=refresh_token,
                    user_id=user.id,
                    expires_at=refresh_expires_at,
                )
            )
            self.db.commit()

            self.cache.set(crm_auth_key(user.id), auth_header, self.credential_ttl_seconds)
            write_login_attempt(self.db, username=username, success=True, ip=client_ip, user_agent=user_agent)
            logger.info("User %s logged in (user_id=%s tenant_id=%s)", username, user.id, tenant.id)

            return TokenBundle(
                token=token,
                refresh_token=refresh_token,
                user=summarize(user, role),
                expires_at=expires_at,
            )
        except Exception as e:
            # Rows committed before the failure stay; the next login repairs them.
            self.db.rollback()
            write_login_attempt(self.db, username=username, success=False, ip=client_ip, user_agent=user_agent)
            logger.warning("Login failed for %s: %s", username, e)
            raise AuthenticationFailed(f"Authentication failed: {e}") from e

    # --- tokens ---

    def verify_token(self, token: str) -> VerifiedToken:
        claims = self.codec.verify(token, ACCESS)

        session = self.db.query(UserSession).filter(UserSession.token == token).first()
        if not session:
            raise SessionNotFound()

        if datetime.utcnow() > session.expires_at:
            self.db.delete(session)
            self.db.commit()
            raise SessionExpired()

        user = self.db.get(User, session.user_id)
        if not user:
            raise UserNotFound()

        # Live assignments win over the role claim baked into the token.
        return VerifiedToken(user=user, role=primary_role_name(self.db, user.id), claims=claims)

    def refresh_token(
        self,
        refresh_token: str,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> TokenBundle:
        self.codec.verify(refresh_token, REFRESH)

        row = self.db.query(RefreshToken).filter(RefreshToken.token == refresh_token).first()
        if not row:
            raise RefreshTokenNotFound()

        if datetime.utcnow() > row.expires_at:
            self.db.delete(row)
            self.db.commit()
            raise RefreshTokenExpired()

        user = self.db.get(User, row.user_id)
        if not user:
            raise UserNotFound()

        role = primary_role_name(self.db, user.id)
        new_refresh_token, refresh_expires_at = self.codec.create_refresh_token(user_id=user.id)

        # Rotate in place; matching on the old value makes a concurrent refresh lose.
        rotated = (
            self.db.query(RefreshToken)
            .filter(RefreshToken.id == row.id, RefreshToken.token == refresh_token)
            .update(
                {
                    RefreshToken.token: new_refresh_token,
                    RefreshToken.expires_at: refresh_expires_at,
                    RefreshToken.updated_at: datetime.utcnow(),
                },
                synchronize_session="evaluate",
            )
        )
        if rotated != 1:
            self.db.rollback()
            raise RefreshTokenNotFound()

        token, expires_at = self._open_session(user, user.tenant_id, role, client_ip, user_agent)
        self.db.commit()

        return TokenBundle(
            token=token,
            refresh_token=new_refresh_token,
            user=summarize(user, role),
            expires_at=expires_at,
        )

    # --- logout ---

    def logout(self, token: str) -> None:
        session = self.db.query(UserSession).filter(UserSession.token == token).first()
        if not session:
            return
        self.cache.delete(crm_auth_key(session.user_id))
        self.db.query(UserSession).filter(UserSession.token == token).delete(synchronize_session=False)
        self.db.commit()

    def logout_all(self, user_id: str) -> int:
        self.cache.delete(crm_auth_key(user_id))
        removed = (
            self.db.query(UserSession)
            .filter(UserSession.user_id == user_id)
            .delete(synchronize_session=False)
        )
        if self.revoke_refresh_on_logout_all:
            self.db.query(RefreshToken).filter(RefreshToken.user_id == user_id).delete(
                synchronize_session=False
            )
        self.db.commit()
        logger.info("Revoked %s session(s) for user %s", removed, user_id)
        return removed

    def get_crm_auth(self, user_id: str) -> str | None:
        return self.cache.get(crm_auth_key(user_id))
