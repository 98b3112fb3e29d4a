from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from taskguard.logging import get_logger
from taskguard.storage.errors import ConstraintViolation, StoreUnavailable
from taskguard.storage.models import Account, LoginActivity, ProviderLink, Session

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    tenant_id TEXT NOT NULL DEFAULT 'public',
    name TEXT,
    password_hash TEXT,
    failed_attempts INTEGER NOT NULL DEFAULT 0,
    lock_until TIMESTAMPTZ,
    is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    two_factor_secret TEXT,
    backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
    avatar_url TEXT,
    terms_accepted_at TIMESTAMPTZ,
    last_login_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT two_factor_has_secret CHECK (NOT two_factor_enabled OR two_factor_secret IS NOT NULL)
);
CREATE TABLE IF NOT EXISTS account_provider (
    account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    provider_id TEXT NOT NULL,
    avatar_url TEXT,
    linked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (account_id, provider),
    UNIQUE (provider, provider_id)
);
CREATE TABLE IF NOT EXISTS auth_session (
    id UUID PRIMARY KEY,
    account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
    tenant_id TEXT NOT NULL DEFAULT 'public',
    created_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    ip_addr TEXT,
    user_agent TEXT,
    device_type TEXT NOT NULL DEFAULT 'unknown',
    device_name TEXT,
    auth_method TEXT NOT NULL,
    last_seen_at TIMESTAMPTZ,
    revoked_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id);
CREATE TABLE IF NOT EXISTS login_activity (
    id UUID PRIMARY KEY,
    account_id UUID,
    session_id UUID,
    auth_method TEXT NOT NULL,
    two_factor_used BOOLEAN NOT NULL DEFAULT FALSE,
    status TEXT NOT NULL,
    failure_reason TEXT,
    ip_address TEXT,
    user_agent TEXT,
    device_type TEXT NOT NULL DEFAULT 'unknown',
    created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS login_activity_account_idx ON login_activity (account_id, created_at DESC);
"""


class PostgresStore:
    """Postgres-backed account store.

    Lockout counters, locks, backup-code consumption and 2FA toggles are
    each a single conditional ``UPDATE ... RETURNING`` so concurrent
    requests for one account cannot interleave a read-modify-write.
    """

    def __init__(self, dsn: str, *, timeout_seconds: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("account store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _account_from_row(row: Dict[str, Any], links: List[Dict[str, Any]]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            tenant_id=row.get("tenant_id", "public"),
            name=row.get("name"),
            password_hash=row.get("password_hash"),
            failed_attempts=int(row.get("failed_attempts") or 0),
            lock_until=row.get("lock_until"),
            is_email_verified=bool(row.get("is_email_verified")),
            is_active=bool(row.get("is_active", True)),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            two_factor_secret=row.get("two_factor_secret"),
            backup_code_hashes=list(row.get("backup_code_hashes") or []),
            linked_providers={
                link["provider"]: ProviderLink(
                    provider=link["provider"],
                    provider_id=link["provider_id"],
                    avatar_url=link.get("avatar_url"),
                    linked_at=link["linked_at"],
                )
                for link in links
            },
            avatar_url=row.get("avatar_url"),
            terms_accepted_at=row.get("terms_accepted_at"),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            device_type=row.get("device_type") or "unknown",
            device_name=row.get("device_name"),
            auth_method=row.get("auth_method") or "password",
            last_seen_at=row.get("last_seen_at"),
            revoked_at=row.get("revoked_at"),
            tenant_id=row.get("tenant_id", "public"),
        )

    def _load_account(self, conn: Any, row: Optional[Dict[str, Any]]) -> Optional[Account]:
        if not row:
            return None
        links = conn.execute(
            "SELECT * FROM account_provider WHERE account_id = %s", (row["id"],)
        ).fetchall()
        return self._account_from_row(row, links)

    # accounts
    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (
                        id, email, tenant_id, name, password_hash, is_email_verified,
                        is_active, avatar_url, terms_accepted_at, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email.strip().lower(),
                        account.tenant_id,
                        account.name,
                        account.password_hash,
                        account.is_email_verified,
                        account.is_active,
                        account.avatar_url,
                        account.terms_accepted_at,
                        account.created_at,
                        account.updated_at,
                    ),
                )
                for link in account.linked_providers.values():
                    conn.execute(
                        """
                        INSERT INTO account_provider (account_id, provider, provider_id, avatar_url, linked_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (account.id, link.provider, link.provider_id, link.avatar_url, link.linked_at),
                    )
        except errors.UniqueViolation as exc:
            field = "provider" if "account_provider" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
            return self._load_account(conn, row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
            return self._load_account(conn, row)

    def get_account_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT a.* FROM account_provider p JOIN account a ON a.id = p.account_id
                WHERE p.provider = %s AND p.provider_id = %s
                """,
                (provider, provider_id),
            ).fetchone()
            return self._load_account(conn, row)

    def save_account(self, account: Account) -> Account:
        """Persist profile fields; counters, locks and 2FA state are left alone."""
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET name = %s, avatar_url = %s, is_active = %s, is_email_verified = %s,
                    terms_accepted_at = %s, last_login_at = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    account.name,
                    account.avatar_url,
                    account.is_active,
                    account.is_email_verified,
                    account.terms_accepted_at,
                    account.last_login_at,
                    account.id,
                ),
            ).fetchone()
            if not row:
                raise KeyError(account.id)
            return self._load_account(conn, row)

    def set_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, account_id),
            )

    def mark_email_verified(self, account_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET is_email_verified = TRUE, updated_at = now()
                WHERE id = %s RETURNING id
                """,
                (account_id,),
            ).fetchone()
        return row is not None

    def touch_last_login(self, account_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login_at = %s WHERE id = %s", (now, account_id)
            )

    # lockout counters
    def increment_failed_attempts(
        self, account_id: str, *, now: datetime, max_attempts: int
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET failed_attempts = CASE
                        WHEN lock_until IS NOT NULL AND lock_until > %(now)s THEN failed_attempts
                        WHEN lock_until IS NOT NULL THEN 1
                        ELSE LEAST(failed_attempts + 1, %(max_attempts)s)
                    END,
                    lock_until = CASE
                        WHEN lock_until IS NOT NULL AND lock_until <= %(now)s THEN NULL
                        ELSE lock_until
                    END,
                    updated_at = %(now)s
                WHERE id = %(account_id)s
                RETURNING failed_attempts
                """,
                {"now": now, "max_attempts": max_attempts, "account_id": account_id},
            ).fetchone()
        if not row:
            raise KeyError(account_id)
        return int(row["failed_attempts"])

    def set_lock(self, account_id: str, until: datetime, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET lock_until = %s, updated_at = %s
                WHERE id = %s AND (lock_until IS NULL OR lock_until <= %s)
                RETURNING id
                """,
                (until, now, account_id, now),
            ).fetchone()
        return row is not None

    def reset_failed_attempts(
        self, account_id: str, *, login_at: Optional[datetime] = None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET failed_attempts = 0, lock_until = NULL,
                    last_login_at = COALESCE(%s, last_login_at), updated_at = now()
                WHERE id = %s
                """,
                (login_at, account_id),
            )

    # two-factor
    def enable_two_factor(
        self, account_id: str, encrypted_secret: str, backup_code_hashes: List[str]
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET two_factor_secret = %s, backup_code_hashes = %s,
                    two_factor_enabled = TRUE, updated_at = now()
                WHERE id = %s AND NOT two_factor_enabled
                RETURNING id
                """,
                (encrypted_secret, list(backup_code_hashes), account_id),
            ).fetchone()
        return row is not None

    def disable_two_factor(self, account_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET two_factor_enabled = FALSE, two_factor_secret = NULL,
                    backup_code_hashes = '{}', updated_at = now()
                WHERE id = %s
                """,
                (account_id,),
            )

    def replace_backup_code_hashes(
        self, account_id: str, backup_code_hashes: List[str]
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET backup_code_hashes = %s, updated_at = now()
                WHERE id = %s AND two_factor_enabled
                RETURNING id
                """,
                (list(backup_code_hashes), account_id),
            ).fetchone()
        return row is not None

    def remove_backup_code_hash(self, account_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET backup_code_hashes = array_remove(backup_code_hashes, %s), updated_at = now()
                WHERE id = %s AND %s = ANY(backup_code_hashes)
                RETURNING id
                """,
                (code_hash, account_id, code_hash),
            ).fetchone()
        return row is not None

    # linked providers
    def link_provider(self, account_id: str, link: ProviderLink) -> bool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account_provider (account_id, provider, provider_id, avatar_url, linked_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (account_id, provider) DO NOTHING
                    RETURNING provider
                    """,
                    (account_id, link.provider, link.provider_id, link.avatar_url, link.linked_at),
                ).fetchone()
                if row and link.avatar_url:
                    conn.execute(
                        "UPDATE account SET avatar_url = COALESCE(avatar_url, %s) WHERE id = %s",
                        (link.avatar_url, account_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "provider identity already linked", {"field": "provider"}
            )
        return row is not None

    def unlink_provider(self, account_id: str, provider: str) -> bool:
        with self._connect() as conn:
            # Row lock serializes concurrent unlinks for one account
            locked = conn.execute(
                "SELECT password_hash FROM account WHERE id = %s FOR UPDATE",
                (account_id,),
            ).fetchone()
            if not locked:
                return False
            row = conn.execute(
                """
                DELETE FROM account_provider
                WHERE account_id = %s AND provider = %s
                  AND (%s OR (SELECT count(*) FROM account_provider WHERE account_id = %s) > 1)
                RETURNING provider
                """,
                (account_id, provider, locked["password_hash"] is not None, account_id),
            ).fetchone()
        return row is not None

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (
                    id, account_id, tenant_id, created_at, expires_at, ip_addr, user_agent,
                    device_type, device_name, auth_method, last_seen_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.account_id,
                    session.tenant_id,
                    session.created_at,
                    session.expires_at,
                    session.ip_addr,
                    session.user_agent,
                    session.device_type,
                    session.device_name,
                    session.auth_method,
                    session.last_seen_at,
                ),
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, account_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE account_id = %s ORDER BY created_at DESC",
                (account_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_seen_at = %s WHERE id = %s",
                (now, session_id),
            )

    def revoke_session(self, session_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, session_id),
            ).fetchone()
        return row is not None

    def revoke_account_sessions(
        self,
        account_id: str,
        *,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE account_id = %s AND revoked_at IS NULL
                  AND (%s::uuid IS NULL OR id <> %s::uuid)
                RETURNING id
                """,
                (now, account_id, except_session_id, except_session_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # login activity
    def record_login_activity(self, activity: LoginActivity) -> LoginActivity:
        activity.id = activity.id or str(uuid.uuid4())
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_activity (
                    id, account_id, session_id, auth_method, two_factor_used, status,
                    failure_reason, ip_address, user_agent, device_type, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    activity.id,
                    activity.account_id,
                    activity.session_id,
                    activity.auth_method,
                    activity.two_factor_used,
                    activity.status,
                    activity.failure_reason,
                    activity.ip_address,
                    activity.user_agent,
                    activity.device_type,
                    activity.created_at,
                ),
            )
        return activity

    def list_login_activity(
        self, account_id: str, limit: int = 30
    ) -> List[LoginActivity]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_activity WHERE account_id = %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (account_id, limit),
            ).fetchall()
        return [
            LoginActivity(
                id=str(row["id"]),
                account_id=str(row["account_id"]) if row.get("account_id") else None,
                session_id=str(row["session_id"]) if row.get("session_id") else None,
                auth_method=row["auth_method"],
                two_factor_used=bool(row.get("two_factor_used")),
                status=row["status"],
                failure_reason=row.get("failure_reason"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                device_type=row.get("device_type") or "unknown",
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def has_successful_login(
        self, account_id: str, *, device_type: str, user_agent: Optional[str]
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM login_activity
                WHERE account_id = %s AND status = 'success' AND device_type = %s
                  AND user_agent IS NOT DISTINCT FROM %s
                LIMIT 1
                """,
                (account_id, device_type, user_agent),
            ).fetchone()
        return row is not None
