from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProviderLink:
    provider: str
    provider_id: str
    avatar_url: Optional[str] = None
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class Account:
    id: str
    email: str
    tenant_id: str = "public"
    name: Optional[str] = None
    password_hash: Optional[str] = None
    failed_attempts: int = 0
    lock_until: Optional[datetime] = None
    is_email_verified: bool = False
    is_active: bool = True
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    backup_code_hashes: List[str] = field(default_factory=list)
    linked_providers: Dict[str, ProviderLink] = field(default_factory=dict)
    avatar_url: Optional[str] = None
    terms_accepted_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        *,
        tenant_id: str = "public",
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        is_email_verified: bool = False,
        avatar_url: Optional[str] = None,
        terms_accepted: bool = False,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            tenant_id=tenant_id,
            name=name,
            password_hash=password_hash,
            is_email_verified=is_email_verified,
            avatar_url=avatar_url,
            terms_accepted_at=now if terms_accepted else None,
            created_at=now,
            updated_at=now,
        )

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def login_method_count(self) -> int:
        return (1 if self.password_hash else 0) + len(self.linked_providers)


@dataclass
class Session:
    id: str
    account_id: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "unknown"
    device_name: Optional[str] = None
    auth_method: str = "password"
    last_seen_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    tenant_id: str = "public"

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl_days: int = 30,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        device_type: str = "unknown",
        device_name: str | None = None,
        auth_method: str = "password",
        tenant_id: str = "public",
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            created_at=created,
            expires_at=created + timedelta(days=ttl_days),
            ip_addr=ip_addr,
            user_agent=user_agent,
            device_type=device_type,
            device_name=device_name,
            auth_method=auth_method,
            last_seen_at=created,
            tenant_id=tenant_id,
        )

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class LoginActivity:
    id: str
    status: str
    auth_method: str
    created_at: datetime
    account_id: Optional[str] = None
    session_id: Optional[str] = None
    two_factor_used: bool = False
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "unknown"
