import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """Base for identity/authorization failures rendered as HTTP errors.

    Each subclass pins an HTTP status and a stable ``code``; handlers dispatch
    on the class, never on the message text.
    """

    status_code: int = 401
    code: str = "auth_error"
    default_message: str = "Authentication error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    default_message = "Too many login attempts. Please try again later."


class TenantNotFound(AuthError):
    status_code = 404
    code = "tenant_not_found"
    default_message = "Tenant not found"


class UserNotFound(AuthError):
    status_code = 404
    code = "user_not_found"
    default_message = "User not found"


class RoleNotFound(AuthError):
    status_code = 404
    code = "role_not_found"
    default_message = "Role not found"


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    default_message = "Invalid username or password"


class InvalidToken(AuthError):
    code = "invalid_token"
    default_message = "Invalid token"


class InvalidTokenType(InvalidToken):
    code = "invalid_token_type"
    default_message = "Invalid token type"


class SessionNotFound(AuthError):
    code = "session_not_found"
    default_message = "Session not found"


class SessionExpired(AuthError):
    code = "session_expired"
    default_message = "Session expired"


class RefreshTokenNotFound(AuthError):
    code = "refresh_token_not_found"
    default_message = "Refresh token not found"


class RefreshTokenExpired(AuthError):
    code = "refresh_token_expired"
    default_message = "Refresh token expired"


class AuthenticationRequired(AuthError):
    code = "authentication_required"
    default_message = "Authentication required"


class AuthenticationFailed(AuthError):
    code = "authentication_failed"
    default_message = "Authentication failed"


class PermissionDenied(AuthError):
    status_code = 403
    code = "permission_denied"
    default_message = "Permission denied"


class UnknownEntity(AuthError):
    status_code = 400
    code = "unknown_entity"
    default_message = "Unknown entity"


class UnknownAction(AuthError):
    status_code = 400
    code = "unknown_action"
    default_message = "Unknown action"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def handle_auth_error(request: Request, exc: AuthError):
        log_fn = logger.info if exc.status_code == 401 else logger.warning
        log_fn(
            "%s %s -> %s %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.code,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
        )
