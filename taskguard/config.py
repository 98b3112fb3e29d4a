from __future__ import annotations

import hashlib
import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/taskguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str = env_field("/srv/taskguard", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic key material and in-process cache fallback for CI.",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for a single store, cache, or SMTP round trip",
    )
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("taskguard", "JWT_ISSUER")
    jwt_audience: str = env_field("taskguard-clients", "JWT_AUDIENCE")
    access_token_ttl_days: int = env_field(7, "ACCESS_TOKEN_TTL_DAYS")
    remember_me_ttl_days: int = env_field(30, "REMEMBER_ME_TTL_DAYS")
    refresh_token_ttl_days: int = env_field(30, "REFRESH_TOKEN_TTL_DAYS")
    temp_token_ttl_minutes: int = env_field(10, "TEMP_TOKEN_TTL_MINUTES")

    # Lockout and sessions
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lock_duration_minutes: int = env_field(30, "LOCK_DURATION_MINUTES")
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS")

    # Two-factor
    two_factor_encryption_key: str | None = env_field(
        None, "TWO_FACTOR_ENCRYPTION_KEY"
    )
    chat_encryption_key: str | None = env_field(None, "CHAT_ENCRYPTION_KEY")
    allow_legacy_plaintext_secrets: bool = env_field(
        False,
        "ALLOW_LEGACY_PLAINTEXT_SECRETS",
        description="Accept unencrypted TOTP secrets during a migration window",
    )
    pending_setup_ttl_minutes: int = env_field(10, "PENDING_SETUP_TTL_MINUTES")
    backup_code_count: int = env_field(10, "BACKUP_CODE_COUNT")
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS")
    two_factor_lockout_seconds: int = env_field(300, "TWO_FACTOR_LOCKOUT_SECONDS")
    totp_issuer: str = env_field("TaskGuard", "TOTP_ISSUER")

    # OAuth
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_facebook_client_id: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_ID")
    oauth_facebook_client_secret: str | None = env_field(
        None, "OAUTH_FACEBOOK_CLIENT_SECRET"
    )
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("TaskGuard", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    send_login_alerts: bool = env_field(True, "SEND_LOGIN_ALERTS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("max_failed_logins", "backup_code_count", "two_factor_max_attempts")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/taskguard"))
        secret_path = state_dir / ".jwt_secret"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted

        generated = secrets.token_urlsafe(64)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        try:
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        return generated

    def encryption_material(self) -> dict[str, str]:
        """Key material per cipher context.

        Outside TEST_MODE the 2FA context must be configured explicitly; the
        CHAT context is only registered when its key is set. Under TEST_MODE,
        missing material is derived from the JWT secret so that local runs
        stay deterministic.
        """
        material = {
            "2FA": self.two_factor_encryption_key,
            "CHAT": self.chat_encryption_key,
        }
        resolved: dict[str, str] = {}
        for context, value in material.items():
            if value:
                resolved[context] = value
            elif self.test_mode:
                resolved[context] = hashlib.sha256(
                    f"{context}:{self.jwt_secret}".encode()
                ).hexdigest()
            elif context == "2FA":
                raise RuntimeError(
                    "TWO_FACTOR_ENCRYPTION_KEY must be set outside TEST_MODE"
                )
        return resolved

    def oauth_credentials(self, provider: str) -> tuple[str | None, str | None]:
        return (
            getattr(self, f"oauth_{provider}_client_id", None),
            getattr(self, f"oauth_{provider}_client_secret", None),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
