from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from errors import TokenExpired, TokenInvalid
from models import Plan, Role
from tokens import TokenCodec, TokenDenylist

USER = SimpleNamespace(id=7, email="ana@example.com", role=Role.ADMIN, plan=Plan.PRO)


def make_codec(**kwargs):
    return TokenCodec("access-secret", "refresh-secret", **kwargs)


def test_issue_and_verify_access_claims():
    codec = make_codec()
    pair = codec.issue(USER)

    claims = codec.verify_access(pair.access_token)

    assert claims.user_id == 7
    assert claims.email == "ana@example.com"
    assert claims.role == "ADMIN"
    assert claims.plan == "PRO"
    expires_in = claims.exp - datetime.now(timezone.utc)
    assert timedelta(minutes=14) < expires_in <= timedelta(minutes=15)


def test_refresh_token_carries_only_user_id():
    codec = make_codec()
    pair = codec.issue(USER)

    claims = codec.verify_refresh(pair.refresh_token)

    assert claims.user_id == 7
    assert claims.exp - datetime.now(timezone.utc) > timedelta(days=6)
    assert not hasattr(claims, "email")


def test_token_signed_with_other_key_is_invalid():
    pair = TokenCodec("someone-else", "someone-else-refresh").issue(USER)

    with pytest.raises(TokenInvalid):
        make_codec().verify_access(pair.access_token)
    with pytest.raises(TokenInvalid):
        make_codec().verify_refresh(pair.refresh_token)


def test_expired_access_token_is_reported_as_expired():
    yesterday = datetime.now(timezone.utc) - timedelta(days=1)
    codec = make_codec(clock=lambda: yesterday)
    pair = codec.issue(USER)

    with pytest.raises(TokenExpired):
        make_codec().verify_access(pair.access_token)
    # The 7 day refresh token from the same pair is still good
    assert make_codec().verify_refresh(pair.refresh_token).user_id == 7


def test_expired_refresh_token_is_rejected():
    long_ago = datetime.now(timezone.utc) - timedelta(days=8)
    pair = make_codec(clock=lambda: long_ago).issue(USER)

    with pytest.raises(TokenExpired):
        make_codec().verify_refresh(pair.refresh_token)


@pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c", "eyJhbGciOiJIUzI1NiJ9.e30."])
def test_malformed_tokens_are_invalid(garbage):
    with pytest.raises(TokenInvalid):
        make_codec().verify_access(garbage)


def test_token_classes_are_not_interchangeable():
    codec = TokenCodec("shared", "shared")
    pair = codec.issue(USER)

    with pytest.raises(TokenInvalid):
        codec.verify_access(pair.refresh_token)
    with pytest.raises(TokenInvalid):
        codec.verify_refresh(pair.access_token)


def test_revoked_token_is_rejected_until_expiry():
    codec = make_codec(denylist=TokenDenylist())
    pair = codec.issue(USER)
    claims = codec.verify_access(pair.access_token)

    assert codec.revoke(claims) is True
    with pytest.raises(TokenInvalid):
        codec.verify_access(pair.access_token)
    # Tokens that were not revoked are unaffected
    assert codec.verify_refresh(pair.refresh_token).user_id == 7


def test_revoke_without_denylist_is_a_no_op():
    codec = make_codec()
    pair = codec.issue(USER)
    claims = codec.verify_access(pair.access_token)

    assert codec.revoke(claims) is False
    assert codec.verify_access(pair.access_token).user_id == 7


def test_denylist_forgets_entries_after_they_expire():
    now = {"t": datetime(2026, 1, 1, tzinfo=timezone.utc)}
    denylist = TokenDenylist(clock=lambda: now["t"])

    denylist.revoke("abc", now["t"] + timedelta(minutes=15))
    assert denylist.is_revoked("abc")
    assert len(denylist) == 1

    now["t"] += timedelta(minutes=16)
    assert not denylist.is_revoked("abc")
    assert len(denylist) == 0
