import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt

from crmgate.core.config import settings
from crmgate.core.errors import InvalidToken, InvalidTokenType

ENV = settings.ENV
JWT_SECRET = settings.JWT_SECRET
if not JWT_SECRET and ENV != "dev":
    raise RuntimeError("JWT_SECRET is not set")
if not JWT_SECRET:
    JWT_SECRET = "dev-change-me"
JWT_ALG = "HS256"

# Fixed policy. Sessions carry the expiry; tokens themselves have no exp claim.
ACCESS_TOKEN_TTL = timedelta(days=1)
REFRESH_TOKEN_TTL = timedelta(days=7)

ACCESS = "access"
REFRESH = "refresh"


class TokenCodec:
    def __init__(self, secret: str, algorithm: str = JWT_ALG) -> None:
        self.secret = secret
        self.algorithm = algorithm

    def _encode(self, claims: Dict[str, Any]) -> str:
        to_encode = dict(claims)
        to_encode["iat"] = int(datetime.now(timezone.utc).timestamp())
        # Two logins in the same second must still produce distinct session keys.
        to_encode["jti"] = secrets.token_urlsafe(16)
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def create_access_token(
        self, *, user_id: str, tenant_id: str, role: str, is_admin: bool
    ) -> tuple[str, datetime]:
        token = self._encode(
            {
                "userId": user_id,
                "tenantId": tenant_id,
                "role": role,
                "isAdmin": is_admin,
                "type": ACCESS,
            }
        )
        return token, datetime.utcnow() + ACCESS_TOKEN_TTL

    def create_refresh_token(self, *, user_id: str) -> tuple[str, datetime]:
        token = self._encode({"userId": user_id, "type": REFRESH})
        return token, datetime.utcnow() + REFRESH_TOKEN_TTL

    def decode(self, token: str) -> Dict[str, Any]:
        return jwt.decode(token, self.secret, algorithms=[self.algorithm])

    def verify(self, token: str, expected_type: str) -> Dict[str, Any]:
        try:
            claims = self.decode(token)
        except JWTError as e:
            raise InvalidToken(f"Invalid token: {e}") from e
        if claims.get("type") != expected_type:
            raise InvalidTokenType()
        if not claims.get("userId"):
            raise InvalidToken("Invalid token payload")
        return claims


codec = TokenCodec(JWT_SECRET)


__all__ = [
    "ACCESS",
    "ACCESS_TOKEN_TTL",
    "REFRESH",
    "REFRESH_TOKEN_TTL",
    "JWTError",
    "TokenCodec",
    "codec",
]
