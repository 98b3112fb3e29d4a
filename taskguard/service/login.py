from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from taskguard.config import Settings
from taskguard.logging import get_logger
from taskguard.service.accounts import AccountStore
from taskguard.service.audit import SecurityAuditSink
from taskguard.service.email import EmailSender
from taskguard.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    TokenInvalidError,
)
from taskguard.service.oauth import OAuthLinkService, OAuthResolution, ProviderProfile
from taskguard.service.passwords import PasswordManager
from taskguard.service.sessions import ClientMeta, SessionRegistry
from taskguard.service.tokens import TokenService, TokenType
from taskguard.service.two_factor import TwoFactorService
from taskguard.storage.models import Account, utcnow
from taskguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
CHALLENGE_EXPIRED = "session expired, login again"


class LoginState(str, Enum):
    AWAITING_CREDENTIALS = "awaiting_credentials"
    CREDENTIALS_VERIFIED = "credentials_verified"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


@dataclass
class LoginResult:
    state: LoginState
    account: Account
    requires_2fa: bool = False
    temp_auth_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    session_id: Optional[str] = None
    expires_in: Optional[int] = None
    backup_code_used: bool = False
    backup_codes_remaining: Optional[int] = None
    account_created: bool = False
    provider_linked: bool = False


def audit_method(initial_method: str) -> str:
    return initial_method if initial_method == "password" else f"{initial_method}-oauth"


class LoginStateMachine:
    """Password and federated login with lockout and the second-factor gate.

    Rejections are raised as typed service errors and never return a
    result; a ``LoginResult`` is either ``AWAITING_SECOND_FACTOR`` (temp
    challenge token only) or ``AUTHENTICATED`` (session plus access and
    refresh tokens). Lockout bookkeeping goes through the store's atomic
    counter operations so concurrent attempts cannot lose updates.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: RedisCache,
        settings: Settings,
        *,
        tokens: TokenService,
        two_factor: TwoFactorService,
        sessions: SessionRegistry,
        oauth: OAuthLinkService,
        audit: SecurityAuditSink,
        email: EmailSender,
        passwords: Optional[PasswordManager] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens
        self.two_factor = two_factor
        self.sessions = sessions
        self.oauth = oauth
        self.audit = audit
        self.email = email
        self.passwords = passwords or PasswordManager()
        self._now = now

    # password
    async def login(
        self,
        email: str,
        password: str,
        remember_me: bool = False,
        client_meta: Optional[ClientMeta] = None,
    ) -> LoginResult:
        meta = client_meta or ClientMeta()
        now = self._now()
        account = self.store.get_account_by_email(email or "")
        if account is None:
            self.passwords.verify_dummy(password)
            self.audit.record_login_attempt(
                status="failed",
                auth_method="password",
                failure_reason="unknown_email",
                meta=meta,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        if account.is_locked(now):
            remaining = (account.lock_until - now).total_seconds()
            minutes = max(1, math.ceil(remaining / 60))
            self._reject(account, meta, "locked")
            raise ForbiddenError(
                f"account is locked due to too many failed attempts, try again in {minutes} minutes",
                detail={"retry_after_seconds": int(math.ceil(remaining))},
            )
        if not account.is_active:
            self._reject(account, meta, "inactive")
            raise ForbiddenError("account has been deactivated")
        if not account.is_email_verified:
            self._reject(account, meta, "email_unverified")
            raise ForbiddenError("verify your email address before signing in")

        if not self.passwords.verify(account.password_hash, password):
            self._register_failure(account, now)
            self._reject(account, meta, "bad_password")
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.store.reset_failed_attempts(account.id, login_at=now)
        if self.passwords.needs_rehash(account.password_hash):
            self.store.set_password_hash(account.id, self.passwords.hash(password))
        account.failed_attempts = 0
        account.lock_until = None
        logger.info("login_credentials_verified", account_id=account.id)
        return await self._complete_first_factor(account, "password", remember_me, meta)

    def _register_failure(self, account: Account, now: datetime) -> None:
        threshold = self.settings.max_failed_logins
        attempts = self.store.increment_failed_attempts(
            account.id, now=now, max_attempts=threshold
        )
        if attempts < threshold:
            return
        until = now + timedelta(minutes=self.settings.lock_duration_minutes)
        if self.store.set_lock(account.id, until, now=now):
            logger.warning(
                "account_locked",
                account_id=account.id,
                attempts=attempts,
                lock_until=until.isoformat(),
            )

    def _reject(self, account: Account, meta: ClientMeta, reason: str, method: str = "password") -> None:
        self.audit.record_login_attempt(
            status="failed",
            auth_method=method,
            account_id=account.id,
            failure_reason=reason,
            meta=meta,
        )

    # gate shared by password and OAuth
    async def _complete_first_factor(
        self,
        account: Account,
        initial_method: str,
        remember_me: bool,
        meta: ClientMeta,
        *,
        resolution: Optional[OAuthResolution] = None,
    ) -> LoginResult:
        created = bool(resolution and resolution.created)
        linked = bool(resolution and resolution.linked)
        if account.two_factor_enabled:
            temp = self.tokens.issue_temp_challenge(
                account.id, initial_method, tenant_id=account.tenant_id
            )
            logger.info(
                "two_factor_challenge_issued",
                account_id=account.id,
                initial_method=initial_method,
            )
            return LoginResult(
                state=LoginState.AWAITING_SECOND_FACTOR,
                account=account,
                requires_2fa=True,
                temp_auth_token=temp,
                account_created=created,
                provider_linked=linked,
            )
        result = await self._issue_bundle(
            account, audit_method(initial_method), remember_me, meta
        )
        result.account_created = created
        result.provider_linked = linked
        return result

    async def _issue_bundle(
        self,
        account: Account,
        auth_method: str,
        remember_me: bool,
        meta: ClientMeta,
        *,
        two_factor_used: bool = False,
    ) -> LoginResult:
        session = await self.sessions.create(
            account.id, meta, auth_method=auth_method, tenant_id=account.tenant_id
        )
        access = self.tokens.issue_access(
            account.id, session.id, remember_me, tenant_id=account.tenant_id
        )
        refresh = self.tokens.issue_refresh(
            account.id, session.id, tenant_id=account.tenant_id
        )
        self._maybe_send_login_alert(account, meta)
        self.audit.record_login_attempt(
            status="success",
            auth_method=auth_method,
            account_id=account.id,
            session_id=session.id,
            two_factor_used=two_factor_used,
            meta=meta,
        )
        return LoginResult(
            state=LoginState.AUTHENTICATED,
            account=account,
            access_token=access,
            refresh_token=refresh,
            session_id=session.id,
            expires_in=self.tokens.access_ttl_seconds(remember_me),
        )

    def _maybe_send_login_alert(self, account: Account, meta: ClientMeta) -> None:
        if not self.settings.send_login_alerts:
            return
        if self.store.has_successful_login(
            account.id, device_type=meta.device_type, user_agent=meta.user_agent
        ):
            return
        self.email.send_login_alert(
            account.email,
            device_type=meta.device_type,
            ip_addr=meta.ip_addr,
            user_agent=meta.user_agent,
            when=self._now(),
        )

    # second factor
    async def verify_two_factor_login(
        self,
        temp_token: str,
        code: str,
        remember_me: bool = False,
        client_meta: Optional[ClientMeta] = None,
    ) -> LoginResult:
        meta = client_meta or ClientMeta()
        try:
            claims = self.tokens.verify(temp_token, TokenType.TWO_FACTOR_TEMP)
        except AuthenticationError:
            raise AuthenticationError(CHALLENGE_EXPIRED)
        account = self.store.get_account(claims.account_id)
        if not account or not account.is_active or not account.two_factor_enabled:
            raise AuthenticationError(CHALLENGE_EXPIRED)

        # Claim the challenge before a backup code can be spent on it
        ttl = max(1, claims.expires_at - int(self._now().timestamp()))
        if not await self.cache.consume_token_once(claims.jti, ttl):
            logger.warning("two_factor_challenge_replayed", account_id=account.id)
            raise AuthenticationError(CHALLENGE_EXPIRED)

        try:
            outcome = await self.two_factor.verify_login(account.id, code)
        except (AuthenticationError, RateLimitedError) as exc:
            await self.cache.release_token(claims.jti)
            self._reject(
                account,
                meta,
                "rate_limited" if isinstance(exc, RateLimitedError) else "invalid_code",
                method="2fa",
            )
            raise

        self.audit.record_event(
            "second_factor_verified",
            account_id=account.id,
            initial_method=claims.initial_method,
            factor="backup_code" if outcome.used_backup_code else "totp",
            backup_code_used=outcome.used_backup_code,
        )
        result = await self._issue_bundle(
            account, "2fa", remember_me, meta, two_factor_used=True
        )
        result.backup_code_used = outcome.used_backup_code
        result.backup_codes_remaining = outcome.backup_codes_remaining
        return result

    # refresh and logout
    async def refresh_token(self, refresh_token: str) -> LoginResult:
        claims = self.tokens.verify(refresh_token, TokenType.REFRESH)
        if await self.cache.is_refresh_revoked(claims.jti):
            logger.warning("refresh_token_reused", account_id=claims.account_id)
            raise TokenInvalidError()
        account = self.store.get_account(claims.account_id)
        if not account or not account.is_active or not account.is_email_verified:
            raise AuthenticationError(CHALLENGE_EXPIRED)
        if claims.session_id and not await self.sessions.is_active(
            claims.session_id, account.id
        ):
            raise AuthenticationError(CHALLENGE_EXPIRED)

        ttl = max(1, claims.expires_at - int(self._now().timestamp()))
        # Single use: the first caller to claim the jti wins
        if not await self.cache.consume_token_once(f"refresh:{claims.jti}", ttl):
            logger.warning("refresh_token_reused", account_id=account.id)
            raise TokenInvalidError()
        await self.cache.mark_refresh_revoked(claims.jti, ttl)

        session_id = claims.session_id
        if session_id:
            self.sessions.touch(session_id)
        else:
            session = await self.sessions.create(
                account.id, auth_method="refresh", tenant_id=account.tenant_id
            )
            session_id = session.id
        access = self.tokens.issue_access(
            account.id, session_id, False, tenant_id=account.tenant_id
        )
        rotated = self.tokens.issue_refresh(
            account.id, session_id, tenant_id=account.tenant_id
        )
        logger.info("refresh_token_rotated", account_id=account.id, session_id=session_id)
        return LoginResult(
            state=LoginState.AUTHENTICATED,
            account=account,
            access_token=access,
            refresh_token=rotated,
            session_id=session_id,
            expires_in=self.tokens.access_ttl_seconds(False),
        )

    async def _revoke_refresh(self, refresh_token: str, account_id: str) -> None:
        try:
            claims = self.tokens.verify(refresh_token, TokenType.REFRESH)
        except AuthenticationError:
            logger.info("logout_refresh_token_unusable", account_id=account_id)
            return
        if claims.account_id != account_id:
            return
        ttl = max(1, claims.expires_at - int(self._now().timestamp()))
        await self.cache.mark_refresh_revoked(claims.jti, ttl)

    async def logout(
        self, account_id: str, session_id: str, refresh_token: Optional[str] = None
    ) -> None:
        await self.sessions.end(account_id, session_id)
        if refresh_token:
            await self._revoke_refresh(refresh_token, account_id)
        self.audit.record_event("logout", account_id=account_id, session_id=session_id)

    async def logout_all(
        self,
        account_id: str,
        except_session_id: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> int:
        count = await self.sessions.end_all(account_id, except_session_id=except_session_id)
        if refresh_token:
            await self._revoke_refresh(refresh_token, account_id)
        self.audit.record_event(
            "logout_all", account_id=account_id, sessions_ended=count
        )
        return count

    # federated
    async def handle_oauth_callback(
        self,
        provider: str,
        provider_profile: ProviderProfile,
        remember_me: bool = False,
        client_meta: Optional[ClientMeta] = None,
    ) -> LoginResult:
        resolution = self.oauth.handle_callback(provider, provider_profile)
        return await self._gate_resolved(provider, resolution, remember_me, client_meta)

    async def oauth_complete(
        self,
        provider: str,
        code: str,
        state: str,
        remember_me: bool = False,
        client_meta: Optional[ClientMeta] = None,
    ) -> LoginResult:
        resolution = await self.oauth.complete(provider, code, state)
        return await self._gate_resolved(provider, resolution, remember_me, client_meta)

    async def _gate_resolved(
        self,
        provider: str,
        resolution: OAuthResolution,
        remember_me: bool,
        client_meta: Optional[ClientMeta],
    ) -> LoginResult:
        meta = client_meta or ClientMeta()
        account = resolution.account
        method = audit_method(provider)
        if not account.is_active:
            self._reject(account, meta, "inactive", method=method)
            raise ForbiddenError("account has been deactivated")
        if not account.is_email_verified:
            self._reject(account, meta, "email_unverified", method=method)
            raise ForbiddenError("verify your email address before signing in")
        return await self._complete_first_factor(
            account, provider, remember_me, meta, resolution=resolution
        )
