"""
Shared fixtures: an in-memory SQLite directory store, the in-process cache
with a controllable clock, and a fake CRM standing in for the HTTP client.

DATABASE_URL must point at SQLite before any crmgate import so the module
level engine never needs a Postgres driver connection.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENV", "dev")
os.environ["REDIS_URL"] = ""

import pytest
from sqlalchemy.orm import sessionmaker

import crmgate.db.models  # noqa: F401
from crmgate.auth.security import TokenCodec
from crmgate.auth.service import AuthService
from crmgate.cache.store import MemoryCache
from crmgate.crm.client import CrmError, basic_auth_header
from crmgate.db.base import Base
from crmgate.db.init_db import seed_synthetic_roles
from crmgate.db.session import build_engine
from crmgate.permissions.service import PermissionResolver
from crmgate.tenants.models import Tenant


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCrm:
    """In-memory CRM: users with passwords, roles with permission documents."""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.passwords: dict[str, str] = {}
        self.roles: list[dict] = []
        self.role_details: dict[str, dict] = {}
        self.list_status: int | None = None
        self.calls: list[tuple] = []

    def add_user(self, user_name, password, *, id, type="regular", email=None, name=None):
        self.users[user_name] = {
            "id": id,
            "userName": user_name,
            "name": name or user_name.title(),
            "emailAddress": email,
            "type": type,
        }
        self.passwords[user_name] = password

    def add_role(self, role_id, name, data, field_data=None):
        self.roles.append({"id": role_id, "name": name})
        self.role_details[role_id] = {"id": role_id, "name": name, "data": data, "fieldData": field_data or {}}

    def client(self, tenant, auth_header=None):
        return _FakeCrmClient(self, auth_header)


class _FakeCrmClient:
    def __init__(self, crm: FakeCrm, auth_header):
        self.crm = crm
        self.auth_header = auth_header

    def _authorized(self) -> bool:
        return any(
            basic_auth_header(name, pw) == self.auth_header for name, pw in self.crm.passwords.items()
        )

    def list_users(self, user_name=None, max_size=200):
        self.crm.calls.append(("list_users", user_name))
        if self.crm.list_status is not None:
            raise CrmError("CRM request failed", status=self.crm.list_status, body="<html>boom</html>")
        if not self._authorized():
            raise CrmError("CRM request failed with status 401", status=401, body="Unauthorized")
        return list(self.crm.users.values())

    def get_user(self, user_id):
        self.crm.calls.append(("get_user", user_id))
        for record in self.crm.users.values():
            if record["id"] == user_id:
                return dict(record)
        raise CrmError("CRM request failed with status 404", status=404)

    def list_roles(self):
        self.crm.calls.append(("list_roles", None))
        return list(self.crm.roles)

    def get_role(self, role_id):
        self.crm.calls.append(("get_role", role_id))
        return self.crm.role_details[role_id]


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    seed_synthetic_roles(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(db):
    row = Tenant(id="t_acme", name="Acme", crm_url="https://crm.acme.test", crm_api_key="svc-key")
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def crm():
    fake = FakeCrm()
    fake.add_user("alex", "s3cret", id="crm-alex", type="Administrator", email="alex@acme.test")
    fake.add_user("sam", "hunter2", id="crm-sam", type="regular", email="sam@acme.test")
    return fake


@pytest.fixture
def codec():
    return TokenCodec("test-secret")


@pytest.fixture
def auth(db, cache, crm, codec, tenant):
    return AuthService(db, cache, codec=codec, client_factory=crm.client, credential_ttl_seconds=3600)


@pytest.fixture
def resolver(db, cache, crm, tenant):
    return PermissionResolver(db, cache, client_factory=crm.client, ttl_seconds=3600)
