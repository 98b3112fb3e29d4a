"""Tests for typed access, refresh and challenge tokens."""

import json

import pytest

from taskguard.config import Settings
from taskguard.service.errors import TokenExpiredError, TokenInvalidError
from taskguard.service.tokens import (
    AccessClaims,
    RefreshClaims,
    TempChallengeClaims,
    TokenService,
    TokenType,
)

from conftest import TEST_SECRET


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock.time)


def test_access_token_round_trip(tokens):
    token = tokens.issue_access("acct-1", "sess-1", tenant_id="public")

    claims = tokens.verify(token, TokenType.ACCESS)
    assert isinstance(claims, AccessClaims)
    assert claims.account_id == "acct-1"
    assert claims.session_id == "sess-1"
    assert claims.tenant_id == "public"
    assert claims.remember_me is False
    assert claims.expires_at - claims.issued_at == 7 * 86400


def test_remember_me_extends_access_lifetime(tokens):
    claims = tokens.verify(tokens.issue_access("acct-1", "sess-1", True), TokenType.ACCESS)

    assert claims.remember_me is True
    assert claims.expires_at - claims.issued_at == 30 * 86400
    assert tokens.access_ttl_seconds(True) == 30 * 86400


def test_each_token_gets_a_unique_id(tokens):
    first = tokens.verify(tokens.issue_access("acct-1", "sess-1"), TokenType.ACCESS)
    second = tokens.verify(tokens.issue_access("acct-1", "sess-1"), TokenType.ACCESS)

    assert first.jti != second.jti


def test_refresh_token_without_session(tokens):
    claims = tokens.verify(tokens.issue_refresh("acct-1"), TokenType.REFRESH)

    assert isinstance(claims, RefreshClaims)
    assert claims.session_id is None


def test_temp_challenge_carries_initial_method(tokens, clock):
    token = tokens.issue_temp_challenge("acct-1", "google")

    claims = tokens.verify(token, TokenType.TWO_FACTOR_TEMP)
    assert isinstance(claims, TempChallengeClaims)
    assert claims.initial_method == "google"
    assert claims.expires_at - claims.issued_at == 10 * 60


@pytest.mark.parametrize(
    "issue, expected",
    [
        (lambda t: t.issue_refresh("acct-1", "sess-1"), TokenType.ACCESS),
        (lambda t: t.issue_temp_challenge("acct-1", "password"), TokenType.ACCESS),
        (lambda t: t.issue_access("acct-1", "sess-1"), TokenType.REFRESH),
        (lambda t: t.issue_access("acct-1", "sess-1"), TokenType.TWO_FACTOR_TEMP),
    ],
)
def test_token_of_one_type_never_satisfies_another(tokens, issue, expected):
    with pytest.raises(TokenInvalidError):
        tokens.verify(issue(tokens), expected)


def test_expiry_is_enforced_at_the_boundary(tokens, clock):
    token = tokens.issue_temp_challenge("acct-1", "password")

    clock.advance(10 * 60 - 1)
    tokens.verify(token, TokenType.TWO_FACTOR_TEMP)

    clock.advance(1)
    with pytest.raises(TokenExpiredError):
        tokens.verify(token, TokenType.TWO_FACTOR_TEMP)


def test_tampered_payload_is_rejected(tokens):
    header, payload, signature = tokens.issue_access("acct-1", "sess-1").split(".")
    forged = json.loads(tokens._decode_segment(payload))
    forged["sub"] = "acct-2"
    forged_payload = tokens._encode_segment(json.dumps(forged).encode())

    with pytest.raises(TokenInvalidError):
        tokens.verify(f"{header}.{forged_payload}.{signature}", TokenType.ACCESS)


def test_alg_none_is_rejected(tokens):
    _, payload, _ = tokens.issue_access("acct-1", "sess-1").split(".")
    header = tokens._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())

    with pytest.raises(TokenInvalidError):
        tokens.verify(f"{header}.{payload}.", TokenType.ACCESS)


def test_foreign_secret_and_audience_are_rejected(tokens, clock):
    other_secret = TokenService(
        Settings(jwt_secret="another-secret-entirely-0123456789abcdef", test_mode=True),
        clock=clock.time,
    )
    other_audience = TokenService(
        Settings(jwt_secret=TEST_SECRET, jwt_audience="someone-else", test_mode=True),
        clock=clock.time,
    )

    with pytest.raises(TokenInvalidError):
        tokens.verify(other_secret.issue_access("acct-1", "sess-1"), TokenType.ACCESS)
    with pytest.raises(TokenInvalidError):
        tokens.verify(other_audience.issue_access("acct-1", "sess-1"), TokenType.ACCESS)


def test_challenge_payload_with_session_is_rejected(tokens, clock):
    now = int(clock.time())
    token = tokens._encode_jwt(
        {
            "iss": tokens.settings.jwt_issuer,
            "aud": tokens.settings.jwt_audience,
            "sub": "acct-1",
            "tid": "public",
            "typ": "2fa-temp",
            "jti": "abc",
            "iat": now,
            "exp": now + 60,
            "im": "password",
            "sid": "sess-1",
        }
    )

    with pytest.raises(TokenInvalidError):
        tokens.verify(token, TokenType.TWO_FACTOR_TEMP)


@pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", None])
def test_garbage_is_invalid(tokens, garbage):
    with pytest.raises(TokenInvalidError):
        tokens.verify(garbage, TokenType.ACCESS)


def test_non_ascii_signature_is_invalid(tokens):
    header, payload, _ = tokens.issue_access("acct-1", "sess-1").split(".")

    with pytest.raises(TokenInvalidError):
        tokens.verify(f"{header}.{payload}.sig\u00e9", TokenType.ACCESS)


@pytest.mark.parametrize("segment", ["header", "payload"])
def test_non_ascii_segments_are_invalid(tokens, segment):
    header, payload, sig = tokens.issue_access("acct-1", "sess-1").split(".")
    parts = {"header": header, "payload": payload}
    parts[segment] += "\u00e9"

    with pytest.raises(TokenInvalidError):
        tokens.verify(f"{parts['header']}.{parts['payload']}.{sig}", TokenType.ACCESS)
