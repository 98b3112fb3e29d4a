"""Tests for federated sign-in, account linking and unlinking."""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from taskguard.config import Settings
from taskguard.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderEmailMissingError,
    ServiceUnavailableError,
    ValidationError,
)
from taskguard.service.login import LoginState
from taskguard.service.oauth import (
    FacebookVerifier,
    GitHubVerifier,
    GoogleVerifier,
    ProviderProfile,
    build_provider_registry,
)
from taskguard.service.two_factor import generate_totp

from conftest import DEFAULT_PASSWORD, TEST_SECRET

CALLBACK = "https://app.example.com/oauth/callback"


def google_profile(email="user@example.com", uid="g-1", verified=True):
    return ProviderProfile(
        provider="google",
        id=uid,
        email=email,
        email_verified=verified,
        name="Pat Example",
        avatar_url="https://lh3.example.com/a.png",
    )


def google_transport(token_status=200, userinfo=None):
    userinfo = userinfo or {
        "sub": "g-1",
        "email": "new@example.com",
        "email_verified": True,
        "name": "New Person",
        "picture": "https://lh3.example.com/new.png",
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_grant"})
            form = parse_qs(request.content.decode())
            assert form["code"] == ["auth-code"]
            assert form["redirect_uri"] == [CALLBACK]
            return httpx.Response(200, json={"access_token": "provider-access"})
        if request.url.host == "www.googleapis.com":
            assert request.headers["Authorization"] == "Bearer provider-access"
            return httpx.Response(200, json=userinfo)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def test_callback_links_existing_password_account(harness, make_account):
    account = make_account()

    first = harness.oauth.handle_callback("google", google_profile(email="USER@example.com"))

    assert first.account.id == account.id
    assert first.linked is True
    assert first.created is False
    stored = harness.store.get_account(account.id)
    assert stored.linked_providers["google"].provider_id == "g-1"
    assert stored.password_hash == account.password_hash
    assert stored.avatar_url == "https://lh3.example.com/a.png"

    second = harness.oauth.handle_callback("google", google_profile())
    assert second.account.id == account.id
    assert second.linked is False
    assert len(harness.store.accounts) == 1


def test_callback_creates_account_for_new_email(harness):
    resolution = harness.oauth.handle_callback("google", google_profile(email="fresh@example.com"))

    assert resolution.created is True
    account = resolution.account
    assert account.email == "fresh@example.com"
    assert account.password_hash is None
    assert account.is_email_verified is True
    assert account.terms_accepted_at is not None
    assert harness.store.get_account_by_provider("google", "g-1").id == account.id


def test_facebook_email_counts_as_verified(harness):
    profile = ProviderProfile(provider="facebook", id="fb-9", email="fb@example.com")

    resolution = harness.oauth.handle_callback("facebook", profile)

    assert resolution.account.is_email_verified is True


def test_missing_email_is_rejected(harness):
    profile = ProviderProfile(provider="github", id="77", email=None)

    with pytest.raises(ProviderEmailMissingError) as excinfo:
        harness.oauth.handle_callback("github", profile)
    assert excinfo.value.status_code == 400
    assert harness.store.accounts == {}


def test_identity_owned_by_another_account(harness, make_account):
    owner = make_account("owner@example.com")
    make_account("other@example.com")
    harness.oauth.handle_callback("google", google_profile(email="owner@example.com"))

    with pytest.raises(ConflictError):
        harness.oauth.handle_callback("google", google_profile(email="other@example.com"))
    assert "google" in harness.store.get_account(owner.id).linked_providers


async def test_oauth_login_without_two_factor(harness, make_account):
    make_account()

    result = await harness.login.handle_oauth_callback("google", google_profile())

    assert result.state is LoginState.AUTHENTICATED
    assert result.provider_linked is True
    assert harness.sessions.get(result.session_id).auth_method == "google-oauth"


async def test_oauth_login_still_requires_second_factor(harness, make_account, enable_two_factor):
    account = make_account()
    secret, _ = await enable_two_factor(account.id)

    challenge = await harness.login.handle_oauth_callback("google", google_profile())

    assert challenge.state is LoginState.AWAITING_SECOND_FACTOR
    assert challenge.access_token is None
    assert harness.store.list_sessions(account.id) == []
    result = await harness.login.verify_two_factor_login(
        challenge.temp_auth_token, generate_totp(secret, harness.clock.time())
    )
    assert result.state is LoginState.AUTHENTICATED


async def test_unverified_provider_email_cannot_sign_in(harness):
    profile = ProviderProfile(provider="github", id="77", email="gh@example.com", email_verified=False)

    with pytest.raises(ForbiddenError):
        await harness.login.handle_oauth_callback("github", profile)
    assert harness.store.get_account_by_email("gh@example.com").is_email_verified is False


def test_unlink_requires_password_and_keeps_one_method(harness, make_account):
    account = make_account()
    harness.oauth.handle_callback("google", google_profile())

    with pytest.raises(AuthenticationError):
        harness.oauth.unlink_provider(account.id, "google", "not-the-password")
    harness.oauth.unlink_provider(account.id, "google", DEFAULT_PASSWORD)

    assert harness.store.get_account(account.id).linked_providers == {}
    with pytest.raises(NotFoundError):
        harness.oauth.unlink_provider(account.id, "google", DEFAULT_PASSWORD)


def test_cannot_unlink_last_sign_in_method(harness):
    account = harness.oauth.handle_callback("google", google_profile()).account

    with pytest.raises(ConflictError):
        harness.oauth.unlink_provider(account.id, "google", None)
    assert "google" in harness.store.get_account(account.id).linked_providers


def test_oauth_only_account_with_two_providers_can_unlink_one(harness):
    account = harness.oauth.handle_callback("google", google_profile()).account
    harness.oauth.handle_callback(
        "facebook", ProviderProfile(provider="facebook", id="fb-1", email="user@example.com")
    )

    harness.oauth.unlink_provider(account.id, "facebook", None)

    assert set(harness.store.get_account(account.id).linked_providers) == {"google"}


async def test_start_and_complete_round_trip(harness):
    harness.oauth.providers["google"] = GoogleVerifier(
        "client-id", "client-secret", transport=google_transport()
    )

    start = await harness.oauth.start("google", CALLBACK)
    query = parse_qs(urlparse(start["authorization_url"]).query)
    assert query["state"] == [start["state"]]
    assert query["client_id"] == ["client-id"]
    assert query["redirect_uri"] == [CALLBACK]

    result = await harness.login.oauth_complete("google", "auth-code", start["state"])

    assert result.state is LoginState.AUTHENTICATED
    assert result.account_created is True
    assert result.account.email == "new@example.com"

    # State is consumed by the first callback
    with pytest.raises(AuthenticationError):
        await harness.oauth.complete("google", "auth-code", start["state"])


async def test_state_bound_to_provider(harness):
    harness.oauth.providers["google"] = GoogleVerifier("id", "secret", transport=google_transport())
    harness.oauth.providers["facebook"] = FacebookVerifier("id", "secret", transport=google_transport())
    start = await harness.oauth.start("google", CALLBACK)

    with pytest.raises(AuthenticationError):
        await harness.oauth.complete("facebook", "auth-code", start["state"])


async def test_start_rejects_unknown_and_unconfigured_providers(harness):
    with pytest.raises(ValidationError):
        await harness.oauth.start("myspace", CALLBACK)
    with pytest.raises(ValidationError):
        await harness.oauth.start("github", CALLBACK)


async def test_rejected_code_and_provider_outage():
    rejected = GoogleVerifier("id", "secret", transport=google_transport(token_status=400))
    outage = GoogleVerifier("id", "secret", transport=google_transport(token_status=502))

    with pytest.raises(AuthenticationError):
        await rejected.exchange("auth-code", CALLBACK)
    with pytest.raises(ServiceUnavailableError):
        await outage.exchange("auth-code", CALLBACK)


async def test_github_uses_primary_verified_email():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"access_token": "gh-token"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 4242, "login": "octo", "email": None})
        if request.url.path == "/user/emails":
            return httpx.Response(
                200,
                content=json.dumps(
                    [
                        {"email": "old@example.com", "primary": False, "verified": True},
                        {"email": "octo@example.com", "primary": True, "verified": True},
                    ]
                ),
            )
        return httpx.Response(404)

    verifier = GitHubVerifier("id", "secret", transport=httpx.MockTransport(handler))

    profile = await verifier.exchange("auth-code", CALLBACK)

    assert profile.id == "4242"
    assert profile.email == "octo@example.com"
    assert profile.email_verified is True
    assert profile.name == "octo"


def test_facebook_profile_normalization():
    verifier = FacebookVerifier("id", "secret")

    profile = verifier.normalize(
        {
            "id": "123",
            "email": "fb@example.com",
            "name": "Face Book",
            "picture": {"data": {"url": "https://graph.example.com/p.jpg"}},
        }
    )

    assert profile.email_verified is True
    assert profile.avatar_url == "https://graph.example.com/p.jpg"


def test_registry_only_includes_configured_providers():
    settings = Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        oauth_google_client_id="gid",
        oauth_google_client_secret="gsecret",
        oauth_github_client_id="only-half",
    )

    registry = build_provider_registry(settings)

    assert set(registry) == {"google"}
