from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol

from taskguard.config import Settings
from taskguard.logging import get_logger
from taskguard.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from taskguard.service.passwords import MIN_PASSWORD_LENGTH, PasswordManager
from taskguard.storage.errors import ConstraintViolation
from taskguard.storage.models import Account, LoginActivity, ProviderLink, Session, utcnow
from taskguard.storage.redis_cache import RedisCache

if TYPE_CHECKING:
    from taskguard.service.email import EmailSender
    from taskguard.service.sessions import SessionRegistry

logger = get_logger(__name__)

VERIFY_TOKEN_TTL_SECONDS = 24 * 60 * 60
RESET_TOKEN_TTL_SECONDS = 60 * 60


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_provider(self, provider: str, provider_id: str) -> Optional[Account]: ...

    def save_account(self, account: Account) -> Account: ...

    def set_password_hash(self, account_id: str, password_hash: str) -> None: ...

    def mark_email_verified(self, account_id: str) -> bool: ...

    def touch_last_login(self, account_id: str, now: datetime) -> None: ...

    def increment_failed_attempts(
        self, account_id: str, *, now: datetime, max_attempts: int
    ) -> int: ...

    def set_lock(self, account_id: str, until: datetime, *, now: datetime) -> bool: ...

    def reset_failed_attempts(
        self, account_id: str, *, login_at: Optional[datetime] = None
    ) -> None: ...

    def enable_two_factor(
        self, account_id: str, encrypted_secret: str, backup_code_hashes: List[str]
    ) -> bool: ...

    def disable_two_factor(self, account_id: str) -> None: ...

    def replace_backup_code_hashes(
        self, account_id: str, backup_code_hashes: List[str]
    ) -> bool: ...

    def remove_backup_code_hash(self, account_id: str, code_hash: str) -> bool: ...

    def link_provider(self, account_id: str, link: ProviderLink) -> bool: ...

    def unlink_provider(self, account_id: str, provider: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(self, account_id: str) -> List[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def revoke_session(self, session_id: str, *, now: datetime) -> bool: ...

    def revoke_account_sessions(
        self,
        account_id: str,
        *,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[str]: ...

    def record_login_activity(self, activity: LoginActivity) -> LoginActivity: ...

    def list_login_activity(self, account_id: str, limit: int = 30) -> List[LoginActivity]: ...

    def has_successful_login(
        self, account_id: str, *, device_type: str, user_agent: Optional[str]
    ) -> bool: ...


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def validate_password_strength(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )


class AccountService:
    """Registration, email verification, password recovery and change.

    One-time tokens are random URL-safe strings handed to the user by
    email; the cache only ever sees their SHA-256 digest and pops them
    atomically so each token is honoured once.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: RedisCache,
        settings: Settings,
        *,
        email: "EmailSender",
        sessions: "SessionRegistry",
        passwords: Optional[PasswordManager] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.email = email
        self.sessions = sessions
        self.passwords = passwords or PasswordManager()
        self._now = now

    async def _issue_token(self, purpose: str, account_id: str, ttl_seconds: int) -> str:
        token = secrets.token_urlsafe(32)
        await self.cache.put_one_time_token(
            purpose, _token_digest(token), account_id, ttl_seconds
        )
        return token

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        terms_accepted: bool = False,
    ) -> Account:
        normalized = (email or "").strip().lower()
        if "@" not in normalized:
            raise ValidationError("invalid email address", detail={"field": "email"})
        if not terms_accepted:
            raise ValidationError(
                "terms of service must be accepted", detail={"field": "terms_accepted"}
            )
        validate_password_strength(password)
        if self.store.get_account_by_email(normalized):
            raise ConflictError("email already registered", detail={"field": "email"})
        account = Account.new(
            normalized,
            tenant_id=self.settings.default_tenant_id,
            name=name,
            password_hash=self.passwords.hash(password),
            terms_accepted=True,
        )
        try:
            account = self.store.create_account(account)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        token = await self._issue_token("verify", account.id, VERIFY_TOKEN_TTL_SECONDS)
        self.email.send_verification(account.email, token)
        logger.info("account_registered", account_id=account.id)
        return account

    async def verify_email(self, token: str) -> Account:
        account_id = await self.cache.pop_one_time_token("verify", _token_digest(token or ""))
        account = self.store.get_account(account_id) if account_id else None
        if not account:
            logger.warning("email_verification_invalid_token")
            raise NotFoundError("verification link is invalid or has expired")
        self.store.mark_email_verified(account.id)
        logger.info("email_verified", account_id=account.id)
        account.is_email_verified = True
        return account

    async def resend_verification(self, email: str) -> None:
        account = self.store.get_account_by_email(email or "")
        if not account or account.is_email_verified:
            return
        token = await self._issue_token("verify", account.id, VERIFY_TOKEN_TTL_SECONDS)
        self.email.send_verification(account.email, token)
        logger.info("email_verification_resent", account_id=account.id)

    async def request_password_reset(self, email: str) -> None:
        account = self.store.get_account_by_email(email or "")
        if not account:
            logger.info(
                "password_reset_unknown_email",
                email_hash=hashlib.sha256((email or "").lower().encode()).hexdigest(),
            )
            return
        if not account.is_email_verified:
            raise ForbiddenError("verify your email before resetting the password")
        token = await self._issue_token("reset", account.id, RESET_TOKEN_TTL_SECONDS)
        self.email.send_password_reset(account.email, token)
        logger.info("password_reset_requested", account_id=account.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        validate_password_strength(new_password)
        account_id = await self.cache.pop_one_time_token("reset", _token_digest(token or ""))
        account = self.store.get_account(account_id) if account_id else None
        if not account:
            logger.warning("password_reset_invalid_token")
            raise NotFoundError("reset link is invalid or has expired")
        if self.passwords.verify(account.password_hash, new_password):
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "password"},
            )
        self.store.set_password_hash(account.id, self.passwords.hash(new_password))
        self.store.reset_failed_attempts(account.id)
        await self.sessions.end_all(account.id)
        logger.info("password_reset_completed", account_id=account.id)

    async def change_password(
        self,
        account_id: str,
        current_password: Optional[str],
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
    ) -> None:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        if account.password_hash and not self.passwords.verify(
            account.password_hash, current_password
        ):
            logger.warning("password_change_bad_current", account_id=account_id)
            raise AuthenticationError("current password is incorrect")
        validate_password_strength(new_password)
        if self.passwords.verify(account.password_hash, new_password):
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "password"},
            )
        self.store.set_password_hash(account_id, self.passwords.hash(new_password))
        await self.sessions.end_all(account_id, except_session_id=current_session_id)
        logger.info("password_changed", account_id=account_id)
