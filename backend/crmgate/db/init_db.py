import secrets

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from crmgate.db.base import Base
from crmgate.db.session import engine as default_engine
import crmgate.db.models  # noqa: F401
from crmgate.permissions.models import SYNTHETIC_ROLES, Role


def seed_synthetic_roles(db: Session) -> None:
    for external_id in SYNTHETIC_ROLES:
        if db.query(Role).filter(Role.external_id == external_id).first():
            continue
        db.add(
            Role(
                id=f"r_{secrets.token_hex(10)}",
                external_id=external_id,
                name=external_id,
                permissions={},
            )
        )
    db.commit()


def init_db(bind: Engine | None = None) -> None:
    bind = bind or default_engine
    Base.metadata.create_all(bind=bind)
    with Session(bind) as db:
        seed_synthetic_roles(db)


if __name__ == "__main__":
    init_db()
