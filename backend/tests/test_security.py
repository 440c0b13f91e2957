import base64
import json
from datetime import datetime, timedelta

import pytest

from crmgate.auth.security import ACCESS, REFRESH, TokenCodec
from crmgate.core.errors import InvalidToken, InvalidTokenType


def test_access_token_carries_identity_claims(codec):
    token, expires_at = codec.create_access_token(
        user_id="u_1", tenant_id="t_1", role="external-user", is_admin=False
    )

    claims = codec.verify(token, ACCESS)

    assert claims["userId"] == "u_1"
    assert claims["tenantId"] == "t_1"
    assert claims["role"] == "external-user"
    assert claims["isAdmin"] is False
    assert claims["type"] == "access"
    assert "exp" not in claims
    assert timedelta(hours=23) < expires_at - datetime.utcnow() <= timedelta(days=1)


def test_refresh_token_lifetime_is_seven_days(codec):
    token, expires_at = codec.create_refresh_token(user_id="u_1")

    claims = codec.verify(token, REFRESH)

    assert claims == {**claims, "userId": "u_1", "type": "refresh"}
    assert timedelta(days=6, hours=23) < expires_at - datetime.utcnow() <= timedelta(days=7)


def test_token_type_is_enforced(codec):
    refresh, _ = codec.create_refresh_token(user_id="u_1")
    access, _ = codec.create_access_token(user_id="u_1", tenant_id="t", role="user", is_admin=False)

    with pytest.raises(InvalidTokenType):
        codec.verify(refresh, ACCESS)
    with pytest.raises(InvalidTokenType):
        codec.verify(access, REFRESH)


def test_tampered_or_foreign_tokens_are_rejected(codec):
    token, _ = codec.create_access_token(user_id="u_1", tenant_id="t", role="user", is_admin=False)
    header, _payload, signature = token.split(".")
    forged_claims = {"userId": "u_1", "tenantId": "t", "role": "user", "isAdmin": True, "type": "access"}
    forged = base64.urlsafe_b64encode(json.dumps(forged_claims).encode()).rstrip(b"=").decode()

    with pytest.raises(InvalidToken):
        codec.verify(f"{header}.{forged}.{signature}", ACCESS)
    with pytest.raises(InvalidToken):
        TokenCodec("another-secret").verify(token, ACCESS)
    with pytest.raises(InvalidToken):
        codec.verify("not-a-jwt", ACCESS)


def test_tokens_for_identical_claims_are_distinct(codec):
    first, _ = codec.create_access_token(user_id="u_1", tenant_id="t", role="user", is_admin=False)
    second, _ = codec.create_access_token(user_id="u_1", tenant_id="t", role="user", is_admin=False)

    assert first != second
