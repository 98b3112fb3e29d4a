from __future__ import annotations

import base64
import hashlib
import hmac
import os
import secrets
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from taskguard.config import Settings
from taskguard.logging import get_logger
from taskguard.service.accounts import AccountStore
from taskguard.service.cipher import SecretCipher
from taskguard.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from taskguard.service.passwords import PasswordManager
from taskguard.storage.models import Account
from taskguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_WINDOW = 1
SECRET_CONTEXT = "2FA"


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``secret`` at ``timestamp``; empty string for a bad secret."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    timestamp: float,
    *,
    window: int = TOTP_WINDOW,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept the previous, current and next step when ``window`` is 1."""
    candidate = (code or "").strip()
    if not _is_totp_shaped(candidate):
        return False
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * interval, interval=interval)
        # Constant-time comparison
        if generated and hmac.compare_digest(generated, candidate):
            return True
    return False


def normalize_backup_code(code: str) -> str:
    return code.strip().upper().replace("-", "")


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()


def _is_totp_shaped(code: str) -> bool:
    return len(code) == TOTP_DIGITS and code.isascii() and code.isdigit()


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    provisioning_uri: str


@dataclass(frozen=True)
class SecondFactorResult:
    used_backup_code: bool
    backup_codes_remaining: int


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    backup_codes_remaining: int


class TwoFactorService:
    """TOTP enrolment, backup codes and second-factor verification.

    Pending secrets live only in the shared cache until confirmed. Enabled
    secrets are stored encrypted under the "2FA" cipher context. Failed
    codes are counted per account in the cache; reaching the limit locks
    second-factor verification for ``two_factor_lockout_seconds``.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: RedisCache,
        cipher: SecretCipher,
        settings: Settings,
        *,
        passwords: Optional[PasswordManager] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cipher = cipher
        self.settings = settings
        self.passwords = passwords or PasswordManager()
        self._clock = clock

    def _account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found")
        return account

    def _new_backup_codes(self) -> List[str]:
        return [secrets.token_hex(4).upper() for _ in range(self.settings.backup_code_count)]

    def _provisioning_uri(self, secret: str, email: str) -> str:
        issuer = self.settings.totp_issuer
        label = quote(f"{issuer}:{email}")
        query = urlencode({"secret": secret, "issuer": issuer})
        return f"otpauth://totp/{label}?{query}"

    async def generate_setup_data(self, account_id: str) -> TwoFactorSetup:
        account = self._account(account_id)
        if account.two_factor_enabled:
            raise ValidationError("two-factor authentication is already enabled")
        secret = base64.b32encode(os.urandom(20)).decode("utf-8").rstrip("=")
        # The pending secret is encrypted in the cache as well as on the account
        await self.cache.put_pending_setup(
            account_id,
            self.cipher.encrypt(secret, SECRET_CONTEXT),
            self.settings.pending_setup_ttl_minutes * 60,
        )
        logger.info("two_factor_setup_started", account_id=account_id)
        return TwoFactorSetup(
            secret=secret, provisioning_uri=self._provisioning_uri(secret, account.email)
        )

    async def verify_and_enable(self, account_id: str, code: str) -> List[str]:
        """Confirm the pending secret and return the plaintext backup codes once."""
        account = self._account(account_id)
        if account.two_factor_enabled:
            raise ValidationError("two-factor authentication is already enabled")
        pending = await self.cache.get_pending_setup(account_id)
        if not pending:
            raise NotFoundError("no pending two-factor setup, or it has expired")
        secret = self.cipher.decrypt(pending, SECRET_CONTEXT)
        if not verify_totp(secret, code, self._clock()):
            logger.warning("two_factor_setup_code_rejected", account_id=account_id)
            raise AuthenticationError("invalid verification code")

        codes = self._new_backup_codes()
        enabled = self.store.enable_two_factor(
            account_id,
            self.cipher.encrypt(secret, SECRET_CONTEXT),
            [hash_backup_code(c) for c in codes],
        )
        if not enabled:
            raise ConflictError("two-factor authentication is already enabled")
        await self.cache.delete_pending_setup(account_id)
        logger.info("two_factor_enabled", account_id=account_id)
        return codes

    async def _guard_lockout(self, account_id: str) -> None:
        if await self.cache.check_two_factor_lockout(account_id):
            logger.warning("two_factor_locked_out", account_id=account_id)
            raise RateLimitedError(
                "too many invalid codes, try again later",
                detail={"retry_after_seconds": self.settings.two_factor_lockout_seconds},
            )

    async def _record_failure(self, account_id: str) -> None:
        locked, attempts = await self.cache.atomic_two_factor_attempt(
            account_id,
            max_attempts=self.settings.two_factor_max_attempts,
            lockout_seconds=self.settings.two_factor_lockout_seconds,
        )
        if locked and attempts >= 0:
            logger.warning(
                "two_factor_lockout_triggered", account_id=account_id, attempts=attempts
            )

    async def verify_login(self, account_id: str, code: str) -> SecondFactorResult:
        """Check a TOTP code, falling back to a single-use backup code."""
        account = self._account(account_id)
        if not account.two_factor_enabled or not account.two_factor_secret:
            raise ValidationError("two-factor authentication is not enabled")
        await self._guard_lockout(account_id)

        candidate = (code or "").strip()
        secret = self.cipher.decrypt(account.two_factor_secret, SECRET_CONTEXT)
        if verify_totp(secret, candidate, self._clock()):
            await self.cache.clear_two_factor_attempts(account_id)
            return SecondFactorResult(
                used_backup_code=False,
                backup_codes_remaining=len(account.backup_code_hashes),
            )

        if candidate and not _is_totp_shaped(candidate):
            code_hash = hash_backup_code(candidate)
            if code_hash in account.backup_code_hashes and self.store.remove_backup_code_hash(
                account_id, code_hash
            ):
                await self.cache.clear_two_factor_attempts(account_id)
                remaining = len(account.backup_code_hashes) - 1
                logger.info(
                    "backup_code_consumed", account_id=account_id, remaining=remaining
                )
                return SecondFactorResult(used_backup_code=True, backup_codes_remaining=remaining)

        await self._record_failure(account_id)
        logger.warning("two_factor_code_rejected", account_id=account_id)
        raise AuthenticationError("invalid verification code")

    async def disable(self, account_id: str, password: Optional[str], code: Optional[str]) -> None:
        account = self._account(account_id)
        if not account.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        if account.password_hash and not self.passwords.verify(account.password_hash, password):
            logger.warning("two_factor_disable_bad_password", account_id=account_id)
            raise AuthenticationError("invalid password")
        if not code:
            raise AuthenticationError("invalid verification code")
        await self.verify_login(account_id, code)
        self.store.disable_two_factor(account_id)
        await self.cache.delete_pending_setup(account_id)
        logger.info("two_factor_disabled", account_id=account_id)

    async def regenerate_backup_codes(self, account_id: str) -> List[str]:
        account = self._account(account_id)
        if not account.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        codes = self._new_backup_codes()
        if not self.store.replace_backup_code_hashes(
            account_id, [hash_backup_code(c) for c in codes]
        ):
            raise ValidationError("two-factor authentication is not enabled")
        logger.info("backup_codes_regenerated", account_id=account_id)
        return codes

    def status(self, account_id: str) -> TwoFactorStatus:
        account = self._account(account_id)
        return TwoFactorStatus(
            enabled=account.two_factor_enabled,
            backup_codes_remaining=len(account.backup_code_hashes),
        )
