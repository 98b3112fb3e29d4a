from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode, urlparse

import httpx

from taskguard.config import Settings
from taskguard.logging import get_logger
from taskguard.service.accounts import AccountStore
from taskguard.service.audit import SecurityAuditSink
from taskguard.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ProviderEmailMissingError,
    ServiceUnavailableError,
    ValidationError,
)
from taskguard.service.passwords import PasswordManager
from taskguard.storage.errors import ConstraintViolation
from taskguard.storage.models import Account, ProviderLink, utcnow
from taskguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

OAUTH_STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class ProviderProfile:
    """Identity assertion normalized across providers."""

    provider: str
    id: str
    email: Optional[str]
    email_verified: bool = False
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class ProviderIdentityVerifier(Protocol):
    name: str

    def authorization_url(self, state: str, redirect_uri: str) -> str: ...

    async def exchange(self, code: str, redirect_uri: str) -> ProviderProfile: ...


class HttpProviderVerifier:
    """Authorization-code exchange against a provider's token and userinfo endpoints."""

    name = ""
    auth_url = ""
    token_url = ""
    userinfo_url = ""
    scope = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _extra_auth_params(self) -> Dict[str, str]:
        return {}

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            **self._extra_auth_params(),
        }
        return f"{self.auth_url}?{urlencode(params)}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=False,
            transport=self._transport,
        )

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    def _userinfo_params(self) -> Dict[str, str]:
        return {}

    def normalize(self, userinfo: Dict[str, Any]) -> ProviderProfile:
        raise NotImplementedError

    async def _enrich(
        self, client: httpx.AsyncClient, access_token: str, profile: ProviderProfile
    ) -> ProviderProfile:
        return profile

    async def exchange(self, code: str, redirect_uri: str) -> ProviderProfile:
        try:
            async with self._client() as client:
                token_response = await client.post(
                    self.token_url,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                if token_response.status_code in (400, 401):
                    logger.warning(
                        "oauth_code_rejected",
                        provider=self.name,
                        status_code=token_response.status_code,
                    )
                    raise AuthenticationError("authorization code was rejected")
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.name)
                    raise AuthenticationError("authorization code was rejected")

                userinfo_response = await client.get(
                    self.userinfo_url,
                    headers=self._userinfo_headers(access_token),
                    params=self._userinfo_params(),
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=self.name)
                    raise ServiceUnavailableError(f"{self.name} returned an invalid profile")
                profile = self.normalize(userinfo)
                profile = await self._enrich(client, access_token, profile)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.name,
                status_code=exc.response.status_code,
                error=str(exc),
            )
            raise ServiceUnavailableError(f"{self.name} sign-in is unavailable")
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.name, error=str(exc))
            raise ServiceUnavailableError(f"{self.name} sign-in is unavailable")

        if not profile.id:
            logger.error("oauth_identity_missing_uid", provider=self.name)
            raise ServiceUnavailableError(f"{self.name} returned an invalid profile")
        logger.info("oauth_exchange_success", provider=self.name, provider_id=profile.id)
        return profile


class GoogleVerifier(HttpProviderVerifier):
    name = "google"
    auth_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    userinfo_url = "https://www.googleapis.com/oauth2/v3/userinfo"
    scope = "openid email profile"

    def _extra_auth_params(self) -> Dict[str, str]:
        return {"access_type": "online", "prompt": "select_account"}

    def normalize(self, userinfo: Dict[str, Any]) -> ProviderProfile:
        return ProviderProfile(
            provider=self.name,
            id=str(userinfo.get("sub") or userinfo.get("id") or ""),
            email=userinfo.get("email"),
            email_verified=bool(userinfo.get("email_verified", False)),
            name=userinfo.get("name"),
            avatar_url=userinfo.get("picture"),
        )


class FacebookVerifier(HttpProviderVerifier):
    name = "facebook"
    auth_url = "https://www.facebook.com/v19.0/dialog/oauth"
    token_url = "https://graph.facebook.com/v19.0/oauth/access_token"
    userinfo_url = "https://graph.facebook.com/me"
    scope = "email public_profile"

    def _userinfo_params(self) -> Dict[str, str]:
        return {"fields": "id,email,name,picture.type(large)"}

    def normalize(self, userinfo: Dict[str, Any]) -> ProviderProfile:
        picture = userinfo.get("picture")
        avatar = None
        if isinstance(picture, dict):
            avatar = (picture.get("data") or {}).get("url")
        # Facebook only releases confirmed addresses under the email permission
        return ProviderProfile(
            provider=self.name,
            id=str(userinfo.get("id") or ""),
            email=userinfo.get("email"),
            email_verified=True,
            name=userinfo.get("name"),
            avatar_url=avatar,
        )


class GitHubVerifier(HttpProviderVerifier):
    name = "github"
    auth_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"
    userinfo_url = "https://api.github.com/user"
    scope = "read:user user:email"

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }

    def normalize(self, userinfo: Dict[str, Any]) -> ProviderProfile:
        uid = userinfo.get("id")
        return ProviderProfile(
            provider=self.name,
            id=str(uid) if uid is not None else "",
            email=userinfo.get("email"),
            # Public profile email is not a verification claim
            email_verified=False,
            name=userinfo.get("name") or userinfo.get("login"),
            avatar_url=userinfo.get("avatar_url"),
        )

    async def _enrich(
        self, client: httpx.AsyncClient, access_token: str, profile: ProviderProfile
    ) -> ProviderProfile:
        response = await client.get(
            "https://api.github.com/user/emails",
            headers=self._userinfo_headers(access_token),
        )
        if response.status_code != 200:
            return profile
        emails = response.json()
        if not isinstance(emails, list):
            return profile
        primary = next(
            (e for e in emails if isinstance(e, dict) and e.get("primary") and e.get("verified")),
            None,
        )
        if not primary:
            return profile
        return ProviderProfile(
            provider=profile.provider,
            id=profile.id,
            email=primary.get("email"),
            email_verified=True,
            name=profile.name,
            avatar_url=profile.avatar_url,
        )


PROVIDER_CLASSES = {
    cls.name: cls for cls in (GoogleVerifier, FacebookVerifier, GitHubVerifier)
}


def build_provider_registry(
    settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, ProviderIdentityVerifier]:
    """Instantiate a verifier for every provider that has credentials configured."""
    registry: Dict[str, ProviderIdentityVerifier] = {}
    for name, cls in PROVIDER_CLASSES.items():
        client_id, client_secret = settings.oauth_credentials(name)
        if client_id and client_secret:
            registry[name] = cls(
                client_id,
                client_secret,
                timeout_seconds=settings.store_timeout_seconds,
                transport=transport,
            )
    return registry


@dataclass
class OAuthResolution:
    account: Account
    created: bool = False
    linked: bool = False


class OAuthLinkService:
    """Resolves federated identities to accounts and manages provider links."""

    def __init__(
        self,
        store: AccountStore,
        cache: RedisCache,
        settings: Settings,
        audit: SecurityAuditSink,
        *,
        providers: Optional[Dict[str, ProviderIdentityVerifier]] = None,
        passwords: Optional[PasswordManager] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.audit = audit
        self.providers = providers if providers is not None else build_provider_registry(settings)
        self.passwords = passwords or PasswordManager()
        self._now = now

    def _provider(self, provider: str) -> ProviderIdentityVerifier:
        verifier = self.providers.get(provider)
        if verifier is None:
            if provider in PROVIDER_CLASSES:
                logger.warning("oauth_not_configured", provider=provider)
                raise ValidationError(f"{provider} sign-in is not configured")
            raise ValidationError(f"unsupported OAuth provider: {provider}")
        return verifier

    def _redirect_uri(self, redirect_uri: Optional[str]) -> str:
        uri = redirect_uri or self.settings.oauth_redirect_uri
        if not uri:
            logger.error("oauth_no_redirect_uri_configured")
            raise ValidationError("no OAuth redirect URI configured")
        parsed = urlparse(uri)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValidationError("invalid redirect URI", detail={"field": "redirect_uri"})
        return uri

    async def start(self, provider: str, redirect_uri: Optional[str] = None) -> Dict[str, str]:
        verifier = self._provider(provider)
        callback_uri = self._redirect_uri(redirect_uri)
        state = secrets.token_urlsafe(24)
        await self.cache.set_oauth_state(
            state, provider, OAUTH_STATE_TTL_SECONDS, redirect_uri=callback_uri
        )
        return {
            "authorization_url": verifier.authorization_url(state, callback_uri),
            "state": state,
            "provider": provider,
        }

    async def complete(self, provider: str, code: str, state: str) -> OAuthResolution:
        """Validate the state, exchange the code and resolve the account."""
        verifier = self._provider(provider)
        stored = await self.cache.pop_oauth_state(state)
        if not stored or stored.get("provider") != provider:
            logger.warning("oauth_state_invalid", provider=provider)
            raise AuthenticationError("sign-in request expired, try again")
        redirect_uri = stored.get("redirect_uri") or self._redirect_uri(None)
        profile = await verifier.exchange(code, redirect_uri)
        return self.handle_callback(provider, profile)

    def handle_callback(self, provider: str, profile: ProviderProfile) -> OAuthResolution:
        email = (profile.email or "").strip().lower()
        if not email:
            logger.warning("oauth_email_missing", provider=provider, provider_id=profile.id)
            raise ProviderEmailMissingError(provider)
        email_verified = True if provider == "facebook" else bool(profile.email_verified)

        account = self.store.get_account_by_email(email)
        if account is None:
            return self._create_account(provider, profile, email, email_verified)

        existing = account.linked_providers.get(provider)
        if existing is not None:
            if existing.provider_id != profile.id:
                logger.warning(
                    "oauth_provider_id_mismatch",
                    provider=provider,
                    account_id=account.id,
                )
            self.store.touch_last_login(account.id, self._now())
            return OAuthResolution(account=account)

        link = ProviderLink(
            provider=provider,
            provider_id=profile.id,
            avatar_url=profile.avatar_url,
            linked_at=self._now(),
        )
        try:
            linked = self.store.link_provider(account.id, link)
        except ConstraintViolation:
            logger.warning("oauth_identity_owned_elsewhere", provider=provider, account_id=account.id)
            raise ConflictError(f"this {provider} account is linked to another user")
        self.store.touch_last_login(account.id, self._now())
        if linked:
            self.audit.record_event(
                "account_linked", account_id=account.id, provider=provider, provider_id=profile.id
            )
        refreshed = self.store.get_account(account.id) or account
        return OAuthResolution(account=refreshed, linked=linked)

    def _create_account(
        self, provider: str, profile: ProviderProfile, email: str, email_verified: bool
    ) -> OAuthResolution:
        account = Account.new(
            email,
            tenant_id=self.settings.default_tenant_id,
            name=profile.name,
            is_email_verified=email_verified,
            avatar_url=profile.avatar_url,
            terms_accepted=True,
        )
        account.linked_providers[provider] = ProviderLink(
            provider=provider,
            provider_id=profile.id,
            avatar_url=profile.avatar_url,
            linked_at=self._now(),
        )
        account.last_login_at = self._now()
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail=exc.detail)
        self.audit.record_event(
            "account_created_via_oauth",
            account_id=account.id,
            provider=provider,
            email_verified=email_verified,
        )
        return OAuthResolution(account=account, created=True)

    def unlink_provider(self, account_id: str, provider: str, password: Optional[str]) -> None:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        if provider not in account.linked_providers:
            raise NotFoundError(f"{provider} is not linked to this account")
        if account.password_hash and not self.passwords.verify(account.password_hash, password):
            logger.warning("oauth_unlink_bad_password", account_id=account_id, provider=provider)
            raise AuthenticationError("invalid password")
        if account.login_method_count() <= 1:
            raise ConflictError("cannot remove the last sign-in method")
        if not self.store.unlink_provider(account_id, provider):
            raise ConflictError("cannot remove the last sign-in method")
        self.audit.record_event("account_unlinked", account_id=account_id, provider=provider)
