import secrets

from sqlalchemy.orm import Session

from crmgate.audit.models import LoginAttempt


def write_login_attempt(
    db: Session,
    *,
    username: str,
    success: bool,
    ip: str | None = None,
    user_agent: str | None = None,
) -> None:
    db.add(
        LoginAttempt(
            id=f"la_{secrets.token_hex(12)}",
            username=username,
            ip=ip,
            user_agent=user_agent,
            success=success,
        )
    )
    db.commit()
