from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from taskguard.config import get_settings, reset_settings_cache
from taskguard.logging import get_logger
from taskguard.service.accounts import AccountService
from taskguard.service.audit import StoreAuditSink
from taskguard.service.cipher import SecretCipher
from taskguard.service.email import EmailSender
from taskguard.service.login import LoginStateMachine
from taskguard.service.oauth import OAuthLinkService, build_provider_registry
from taskguard.service.passwords import PasswordManager
from taskguard.service.sessions import SessionRegistry
from taskguard.service.tokens import TokenService
from taskguard.service.two_factor import TwoFactorService
from taskguard.storage.memory import MemoryStore
from taskguard.storage.postgres import PostgresStore
from taskguard.storage.redis_cache import InProcessCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Constructs the store, cache, cipher and services once per process."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

        self.cache: RedisCache = self._build_cache()

        # Raises outside TEST_MODE when TWO_FACTOR_ENCRYPTION_KEY is missing
        self.cipher = SecretCipher(
            self.settings.encryption_material(),
            allow_legacy_plaintext=self.settings.allow_legacy_plaintext_secrets,
        )
        self.passwords = PasswordManager()
        self.tokens = TokenService(self.settings)
        self.email = EmailSender(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            timeout_seconds=self.settings.store_timeout_seconds,
        )
        self.audit = StoreAuditSink(self.store)
        self.sessions = SessionRegistry(self.store, self.cache, self.settings)
        self.two_factor = TwoFactorService(
            self.store,
            self.cache,
            self.cipher,
            self.settings,
            passwords=self.passwords,
        )
        self.oauth = OAuthLinkService(
            self.store,
            self.cache,
            self.settings,
            self.audit,
            providers=build_provider_registry(self.settings),
            passwords=self.passwords,
        )
        self.login = LoginStateMachine(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            two_factor=self.two_factor,
            sessions=self.sessions,
            oauth=self.oauth,
            audit=self.audit,
            email=self.email,
            passwords=self.passwords,
        )
        self.accounts = AccountService(
            self.store,
            self.cache,
            self.settings,
            email=self.email,
            sessions=self.sessions,
            passwords=self.passwords,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=not isinstance(self.cache, InProcessCache),
            email_configured=self.email.is_configured,
            oauth_providers=sorted(self.oauth.providers),
        )

    def _build_cache(self) -> RedisCache:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client under TEST_MODE so connections are not bound to per-test loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url,
                        socket_timeout=self.settings.store_timeout_seconds,
                    )
                cache.verify_connection()
                return cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for pending 2FA setups, challenge tokens and sessions; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; pending 2FA setups, "
                "attempt counters and session index are per-process only."
            ),
            mode=fallback_mode,
        )
        return InProcessCache()

    async def close(self) -> None:
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            elif not isinstance(runtime.cache, InProcessCache):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    asyncio.run(runtime.cache.close())
                else:
                    loop.create_task(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
