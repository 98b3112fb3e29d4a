from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol

from taskguard.logging import get_logger
from taskguard.service.sessions import ClientMeta
from taskguard.storage.models import LoginActivity, utcnow

logger = get_logger(__name__)


class SecurityAuditSink(Protocol):
    def record_login_attempt(
        self,
        *,
        status: str,
        auth_method: str,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
        two_factor_used: bool = False,
        failure_reason: Optional[str] = None,
        meta: Optional[ClientMeta] = None,
    ) -> LoginActivity: ...

    def record_event(self, event: str, *, account_id: Optional[str], **context: Any) -> None: ...

    def recent(self, account_id: str, limit: int = 30) -> List[LoginActivity]: ...


class StoreAuditSink:
    """Writes login attempts to the store's login-activity ledger.

    Account events such as link/unlink or 2FA changes have no row type of
    their own and are emitted as structured log lines.
    """

    def __init__(self, store, *, now: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._now = now

    def record_login_attempt(
        self,
        *,
        status: str,
        auth_method: str,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
        two_factor_used: bool = False,
        failure_reason: Optional[str] = None,
        meta: Optional[ClientMeta] = None,
    ) -> LoginActivity:
        meta = meta or ClientMeta()
        activity = LoginActivity(
            id=str(uuid.uuid4()),
            status=status,
            auth_method=auth_method,
            created_at=self._now(),
            account_id=account_id,
            session_id=session_id,
            two_factor_used=two_factor_used,
            failure_reason=failure_reason,
            ip_address=meta.ip_addr,
            user_agent=meta.user_agent,
            device_type=meta.device_type,
        )
        record = self.store.record_login_activity(activity)
        log = logger.info if status == "success" else logger.warning
        log(
            "login_attempt",
            status=status,
            auth_method=auth_method,
            account_id=account_id,
            failure_reason=failure_reason,
            ip_address=meta.ip_addr,
            two_factor_used=two_factor_used,
        )
        return record

    def record_event(self, event: str, *, account_id: Optional[str], **context: Any) -> None:
        logger.info(event, account_id=account_id, audit=True, **context)

    def recent(self, account_id: str, limit: int = 30) -> List[LoginActivity]:
        return self.store.list_login_activity(account_id, limit=limit)
