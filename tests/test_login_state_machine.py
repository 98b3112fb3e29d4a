"""Tests for password login, lockout, the second-factor gate and token rotation."""

import asyncio

import pytest
from argon2 import PasswordHasher

from taskguard.service.errors import AuthenticationError, ForbiddenError, TokenInvalidError
from taskguard.service.login import CHALLENGE_EXPIRED, INVALID_CREDENTIALS, LoginState
from taskguard.service.sessions import ClientMeta
from taskguard.service.tokens import TokenType
from taskguard.service.two_factor import generate_totp
from taskguard.storage.models import Account

from conftest import DEFAULT_PASSWORD

LAPTOP = ClientMeta(
    ip_addr="203.0.113.7",
    user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15",
)
PHONE = ClientMeta(
    ip_addr="198.51.100.20",
    user_agent="Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) Mobile/15E148",
)


async def test_successful_login_issues_session_and_tokens(harness, make_account):
    account = make_account()

    result = await harness.login.login("User@Example.com", DEFAULT_PASSWORD, client_meta=LAPTOP)

    assert result.state is LoginState.AUTHENTICATED
    assert result.requires_2fa is False
    access = harness.tokens.verify(result.access_token, TokenType.ACCESS)
    refresh = harness.tokens.verify(result.refresh_token, TokenType.REFRESH)
    assert access.session_id == result.session_id == refresh.session_id
    session = harness.sessions.get(result.session_id)
    assert session.account_id == account.id
    assert session.device_type == "desktop"
    assert session.auth_method == "password"
    assert await harness.sessions.is_active(result.session_id, account.id)
    assert harness.store.get_account(account.id).last_login_at == harness.clock.utcnow()


async def test_unknown_email_and_wrong_password_look_identical(harness, make_account):
    make_account()

    with pytest.raises(AuthenticationError) as unknown:
        await harness.login.login("nobody@example.com", DEFAULT_PASSWORD)
    with pytest.raises(AuthenticationError) as wrong:
        await harness.login.login("user@example.com", "not-the-password")

    assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS
    assert unknown.value.status_code == wrong.value.status_code == 401


async def test_lockout_after_repeated_failures(harness, make_account):
    account = make_account()
    limit = harness.settings.max_failed_logins

    for _ in range(limit):
        with pytest.raises(AuthenticationError):
            await harness.login.login("user@example.com", "not-the-password")

    # Even the correct password is refused while locked
    with pytest.raises(ForbiddenError) as locked:
        await harness.login.login("user@example.com", DEFAULT_PASSWORD)
    assert "try again in 30 minutes" in locked.value.message
    assert locked.value.detail["retry_after_seconds"] == 30 * 60

    harness.clock.advance(30 * 60 + 1)
    result = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    assert result.state is LoginState.AUTHENTICATED
    stored = harness.store.get_account(account.id)
    assert stored.failed_attempts == 0
    assert stored.lock_until is None


async def test_counter_never_passes_the_threshold(harness, make_account):
    account = make_account()
    limit = harness.settings.max_failed_logins

    for _ in range(limit + 3):
        with pytest.raises((AuthenticationError, ForbiddenError)):
            await harness.login.login("user@example.com", "not-the-password")

    assert harness.store.get_account(account.id).failed_attempts == limit


async def test_failure_after_expired_lock_restarts_count(harness, make_account):
    account = make_account()
    for _ in range(harness.settings.max_failed_logins):
        with pytest.raises(AuthenticationError):
            await harness.login.login("user@example.com", "not-the-password")

    harness.clock.advance(31 * 60)
    with pytest.raises(AuthenticationError):
        await harness.login.login("user@example.com", "not-the-password")

    stored = harness.store.get_account(account.id)
    assert stored.failed_attempts == 1
    assert stored.lock_until is None


async def test_success_resets_partial_failures(harness, make_account):
    account = make_account()
    for _ in range(3):
        with pytest.raises(AuthenticationError):
            await harness.login.login("user@example.com", "not-the-password")

    await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    assert harness.store.get_account(account.id).failed_attempts == 0


async def test_unverified_and_inactive_accounts_are_forbidden(harness, make_account):
    make_account("pending@example.com", verified=False)
    inactive = make_account("gone@example.com")
    harness.store.accounts[inactive.id].is_active = False

    with pytest.raises(ForbiddenError) as unverified:
        await harness.login.login("pending@example.com", DEFAULT_PASSWORD)
    with pytest.raises(ForbiddenError) as deactivated:
        await harness.login.login("gone@example.com", DEFAULT_PASSWORD)

    assert "verify your email" in unverified.value.message
    assert "deactivated" in deactivated.value.message


async def test_outdated_hash_is_upgraded(harness):
    legacy_hash = PasswordHasher().hash(DEFAULT_PASSWORD)
    account = harness.store.create_account(
        Account.new("legacy@example.com", password_hash=legacy_hash, is_email_verified=True)
    )

    await harness.login.login("legacy@example.com", DEFAULT_PASSWORD)

    upgraded = harness.store.get_account(account.id).password_hash
    assert upgraded != legacy_hash
    assert harness.passwords.verify(upgraded, DEFAULT_PASSWORD)


async def test_two_factor_account_gets_challenge_only(harness, make_account, enable_two_factor):
    account = make_account()
    await enable_two_factor(account.id)

    result = await harness.login.login("user@example.com", DEFAULT_PASSWORD, client_meta=LAPTOP)

    assert result.state is LoginState.AWAITING_SECOND_FACTOR
    assert result.requires_2fa is True
    assert result.access_token is None
    assert result.refresh_token is None
    assert result.session_id is None
    assert harness.store.list_sessions(account.id) == []
    claims = harness.tokens.verify(result.temp_auth_token, TokenType.TWO_FACTOR_TEMP)
    assert claims.initial_method == "password"


async def test_second_factor_completes_login(harness, make_account, enable_two_factor):
    account = make_account()
    secret, codes = await enable_two_factor(account.id)
    challenge = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    result = await harness.login.verify_two_factor_login(
        challenge.temp_auth_token,
        generate_totp(secret, harness.clock.time()),
        remember_me=True,
        client_meta=LAPTOP,
    )

    assert result.state is LoginState.AUTHENTICATED
    assert result.backup_code_used is False
    assert result.backup_codes_remaining == len(codes)
    assert result.expires_in == 30 * 86400
    assert harness.sessions.get(result.session_id).auth_method == "2fa"
    latest = harness.audit.recent(account.id)[0]
    assert latest.status == "success"
    assert latest.two_factor_used is True


async def test_challenge_token_is_single_use(harness, make_account, enable_two_factor):
    account = make_account()
    secret, _ = await enable_two_factor(account.id)
    challenge = await harness.login.login("user@example.com", DEFAULT_PASSWORD)
    code = generate_totp(secret, harness.clock.time())

    await harness.login.verify_two_factor_login(challenge.temp_auth_token, code)

    with pytest.raises(AuthenticationError) as replay:
        await harness.login.verify_two_factor_login(challenge.temp_auth_token, code)
    assert replay.value.message == CHALLENGE_EXPIRED


async def test_wrong_code_keeps_challenge_usable(harness, make_account, enable_two_factor):
    account = make_account()
    secret, _ = await enable_two_factor(account.id)
    challenge = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    with pytest.raises(AuthenticationError):
        await harness.login.verify_two_factor_login(challenge.temp_auth_token, "NOTACODE")
    failed = harness.audit.recent(account.id)[0]
    assert failed.status == "failed"
    assert failed.auth_method == "2fa"

    result = await harness.login.verify_two_factor_login(
        challenge.temp_auth_token, generate_totp(secret, harness.clock.time())
    )
    assert result.state is LoginState.AUTHENTICATED


async def test_backup_code_completes_login(harness, make_account, enable_two_factor):
    account = make_account()
    _, codes = await enable_two_factor(account.id)
    challenge = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    result = await harness.login.verify_two_factor_login(challenge.temp_auth_token, codes[3])

    assert result.backup_code_used is True
    assert result.backup_codes_remaining == len(codes) - 1


async def test_racing_backup_codes_spend_only_one(harness, make_account, enable_two_factor):
    account = make_account()
    _, codes = await enable_two_factor(account.id)
    challenge = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    outcomes = await asyncio.gather(
        harness.login.verify_two_factor_login(challenge.temp_auth_token, codes[0]),
        harness.login.verify_two_factor_login(challenge.temp_auth_token, codes[1]),
        return_exceptions=True,
    )

    rejected = [o for o in outcomes if isinstance(o, AuthenticationError)]
    assert len(rejected) == 1
    assert rejected[0].message == CHALLENGE_EXPIRED
    assert harness.two_factor.status(account.id).backup_codes_remaining == len(codes) - 1


async def test_replayed_challenge_leaves_backup_codes_alone(
    harness, make_account, enable_two_factor
):
    account = make_account()
    secret, codes = await enable_two_factor(account.id)
    challenge = await harness.login.login("user@example.com", DEFAULT_PASSWORD)
    await harness.login.verify_two_factor_login(
        challenge.temp_auth_token, generate_totp(secret, harness.clock.time())
    )

    with pytest.raises(AuthenticationError):
        await harness.login.verify_two_factor_login(challenge.temp_auth_token, codes[2])

    assert harness.two_factor.status(account.id).backup_codes_remaining == len(codes)


async def test_expired_challenge(harness, make_account, enable_two_factor):
    account = make_account()
    secret, _ = await enable_two_factor(account.id)
    challenge = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    harness.clock.advance(harness.settings.temp_token_ttl_minutes * 60)

    with pytest.raises(AuthenticationError) as expired:
        await harness.login.verify_two_factor_login(
            challenge.temp_auth_token, generate_totp(secret, harness.clock.time())
        )
    assert expired.value.message == CHALLENGE_EXPIRED


async def test_refresh_rotates_and_rejects_reuse(harness, make_account):
    make_account()
    first = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    second = await harness.login.refresh_token(first.refresh_token)

    assert second.refresh_token != first.refresh_token
    assert second.session_id == first.session_id
    assert harness.tokens.verify(second.access_token, TokenType.ACCESS).session_id == first.session_id
    with pytest.raises(TokenInvalidError):
        await harness.login.refresh_token(first.refresh_token)
    third = await harness.login.refresh_token(second.refresh_token)
    assert third.state is LoginState.AUTHENTICATED


async def test_access_token_cannot_refresh(harness, make_account):
    make_account()
    result = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    with pytest.raises(TokenInvalidError):
        await harness.login.refresh_token(result.access_token)


async def test_logout_ends_session_and_refresh(harness, make_account):
    account = make_account()
    result = await harness.login.login("user@example.com", DEFAULT_PASSWORD)

    await harness.login.logout(account.id, result.session_id, result.refresh_token)

    assert not await harness.sessions.is_active(result.session_id, account.id)
    with pytest.raises(AuthenticationError):
        await harness.login.refresh_token(result.refresh_token)


async def test_logout_all_keeps_nothing_by_default(harness, make_account):
    account = make_account()
    first = await harness.login.login("user@example.com", DEFAULT_PASSWORD, client_meta=LAPTOP)
    second = await harness.login.login("user@example.com", DEFAULT_PASSWORD, client_meta=PHONE)

    ended = await harness.login.logout_all(account.id)

    assert ended == 2
    assert not await harness.sessions.is_active(first.session_id)
    assert not await harness.sessions.is_active(second.session_id)


async def test_login_alert_only_for_new_devices(harness, make_account):
    make_account()

    await harness.login.login("user@example.com", DEFAULT_PASSWORD, client_meta=LAPTOP)
    await harness.login.login("user@example.com", DEFAULT_PASSWORD, client_meta=LAPTOP)
    await harness.login.login("user@example.com", DEFAULT_PASSWORD, client_meta=PHONE)

    assert [details["device_type"] for _, details in harness.email.alerts] == [
        "desktop",
        "mobile",
    ]


async def test_attempts_are_recorded(harness, make_account):
    account = make_account()
    with pytest.raises(AuthenticationError):
        await harness.login.login("user@example.com", "not-the-password", client_meta=PHONE)
    harness.clock.advance(1)
    await harness.login.login("user@example.com", DEFAULT_PASSWORD, client_meta=PHONE)

    success, failure = harness.audit.recent(account.id)[:2]
    assert success.status == "success"
    assert failure.status == "failed"
    assert failure.failure_reason == "bad_password"
    assert failure.ip_address == "198.51.100.20"
    assert failure.device_type == "mobile"
