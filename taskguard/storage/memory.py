from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional

from taskguard.logging import get_logger
from taskguard.storage.errors import ConstraintViolation
from taskguard.storage.models import (
    Account,
    LoginActivity,
    ProviderLink,
    Session,
    utcnow,
)


class MemoryStore:
    """In-process account store for tests and single-node development.

    Every mutation that takes part in the lockout or backup-code invariants
    runs as a single check-and-set under ``_data_lock`` so concurrent login
    attempts against one account never lose updates. Reads hand out deep
    copies; callers persist changes through the store methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_activity: List[LoginActivity] = []
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()

    # accounts
    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            email = account.email.strip().lower()
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for provider, link in account.linked_providers.items():
                if self._owner_of(provider, link.provider_id) is not None:
                    raise ConstraintViolation(
                        "provider identity already linked", {"field": "provider"}
                    )
            stored = copy.deepcopy(account)
            stored.email = email
            self.accounts[stored.id] = stored
            return copy.deepcopy(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return copy.deepcopy(account)
        return None

    def get_account_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            owner = self._owner_of(provider, provider_id)
            return copy.deepcopy(owner) if owner else None

    def _owner_of(self, provider: str, provider_id: str) -> Optional[Account]:
        for account in self.accounts.values():
            link = account.linked_providers.get(provider)
            if link and link.provider_id == provider_id:
                return account
        return None

    def save_account(self, account: Account) -> Account:
        """Persist profile fields; counters, locks and 2FA state are left alone."""
        with self._data_lock:
            current = self.accounts.get(account.id)
            if not current:
                raise KeyError(account.id)
            current.name = account.name
            current.avatar_url = account.avatar_url
            current.is_active = account.is_active
            current.is_email_verified = account.is_email_verified
            current.terms_accepted_at = account.terms_accepted_at
            current.last_login_at = account.last_login_at
            current.updated_at = utcnow()
            return copy.deepcopy(current)

    def set_password_hash(self, account_id: str, password_hash: str) -> None:
        with self._data_lock:
            account = self.accounts[account_id]
            account.password_hash = password_hash
            account.updated_at = utcnow()

    def mark_email_verified(self, account_id: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.is_email_verified = True
            account.updated_at = utcnow()
            return True

    def touch_last_login(self, account_id: str, now: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login_at = now

    # lockout counters
    def increment_failed_attempts(
        self, account_id: str, *, now: datetime, max_attempts: int
    ) -> int:
        """Record one failed password attempt and return the new count.

        An active lock freezes the counter. An expired lock restarts the
        count at 1. The counter never moves past ``max_attempts``.
        """
        with self._data_lock:
            account = self.accounts[account_id]
            if account.lock_until is not None and account.lock_until > now:
                return account.failed_attempts
            if account.lock_until is not None:
                account.lock_until = None
                account.failed_attempts = 1
            else:
                account.failed_attempts = min(account.failed_attempts + 1, max_attempts)
            account.updated_at = now
            return account.failed_attempts

    def set_lock(self, account_id: str, until: datetime, *, now: datetime) -> bool:
        """Lock the account unless a lock is already in force."""
        with self._data_lock:
            account = self.accounts[account_id]
            if account.lock_until is not None and account.lock_until > now:
                return False
            account.lock_until = until
            account.updated_at = now
            return True

    def reset_failed_attempts(
        self, account_id: str, *, login_at: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            account = self.accounts[account_id]
            account.failed_attempts = 0
            account.lock_until = None
            if login_at is not None:
                account.last_login_at = login_at
            account.updated_at = utcnow()

    # two-factor
    def enable_two_factor(
        self, account_id: str, encrypted_secret: str, backup_code_hashes: List[str]
    ) -> bool:
        with self._data_lock:
            account = self.accounts[account_id]
            if account.two_factor_enabled:
                return False
            account.two_factor_secret = encrypted_secret
            account.backup_code_hashes = list(backup_code_hashes)
            account.two_factor_enabled = True
            account.updated_at = utcnow()
            return True

    def disable_two_factor(self, account_id: str) -> None:
        with self._data_lock:
            account = self.accounts[account_id]
            account.two_factor_enabled = False
            account.two_factor_secret = None
            account.backup_code_hashes = []
            account.updated_at = utcnow()

    def replace_backup_code_hashes(
        self, account_id: str, backup_code_hashes: List[str]
    ) -> bool:
        with self._data_lock:
            account = self.accounts[account_id]
            if not account.two_factor_enabled:
                return False
            account.backup_code_hashes = list(backup_code_hashes)
            account.updated_at = utcnow()
            return True

    def remove_backup_code_hash(self, account_id: str, code_hash: str) -> bool:
        """Consume one backup code; only the first caller for a hash wins."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or code_hash not in account.backup_code_hashes:
                return False
            account.backup_code_hashes.remove(code_hash)
            account.updated_at = utcnow()
            return True

    # linked providers
    def link_provider(self, account_id: str, link: ProviderLink) -> bool:
        with self._data_lock:
            owner = self._owner_of(link.provider, link.provider_id)
            if owner is not None and owner.id != account_id:
                raise ConstraintViolation(
                    "provider identity already linked", {"field": "provider"}
                )
            account = self.accounts[account_id]
            if link.provider in account.linked_providers:
                return False
            account.linked_providers[link.provider] = copy.deepcopy(link)
            if link.avatar_url and not account.avatar_url:
                account.avatar_url = link.avatar_url
            account.updated_at = utcnow()
            return True

    def unlink_provider(self, account_id: str, provider: str) -> bool:
        """Remove a provider link only if another login method remains."""
        with self._data_lock:
            account = self.accounts[account_id]
            if provider not in account.linked_providers:
                return False
            if account.login_method_count() <= 1:
                return False
            del account.linked_providers[provider]
            account.updated_at = utcnow()
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            self.sessions[session.id] = copy.deepcopy(session)
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def list_sessions(self, account_id: str) -> List[Session]:
        with self._data_lock:
            sessions = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.account_id == account_id
            ]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session:
                session.last_seen_at = now

    def revoke_session(self, session_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.revoked_at is not None:
                return False
            session.revoked_at = now
            return True

    def revoke_account_sessions(
        self,
        account_id: str,
        *,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        revoked: List[str] = []
        with self._data_lock:
            for session in self.sessions.values():
                if session.account_id != account_id or session.revoked_at is not None:
                    continue
                if except_session_id and session.id == except_session_id:
                    continue
                session.revoked_at = now
                revoked.append(session.id)
        return revoked

    # login activity
    def record_login_activity(self, activity: LoginActivity) -> LoginActivity:
        with self._data_lock:
            if not activity.id:
                activity.id = str(uuid.uuid4())
            self.login_activity.append(copy.deepcopy(activity))
            return activity

    def list_login_activity(
        self, account_id: str, limit: int = 30
    ) -> List[LoginActivity]:
        with self._data_lock:
            entries = [
                copy.deepcopy(a)
                for a in self.login_activity
                if a.account_id == account_id
            ]
        entries.sort(key=lambda a: a.created_at, reverse=True)
        return entries[:limit]

    def has_successful_login(
        self, account_id: str, *, device_type: str, user_agent: Optional[str]
    ) -> bool:
        with self._data_lock:
            return any(
                a.account_id == account_id
                and a.status == "success"
                and a.device_type == device_type
                and a.user_agent == user_agent
                for a in self.login_activity
            )
