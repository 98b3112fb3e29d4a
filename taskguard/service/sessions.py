from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from taskguard.config import Settings
from taskguard.logging import get_logger
from taskguard.service.accounts import AccountStore
from taskguard.service.errors import NotFoundError
from taskguard.storage.models import Session, utcnow
from taskguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_TABLET_MARKERS = ("ipad", "tablet", "kindle", "silk/", "playbook")
_MOBILE_MARKERS = ("mobi", "iphone", "ipod", "android", "blackberry", "windows phone", "opera mini")
_DESKTOP_MARKERS = ("windows nt", "macintosh", "mac os x", "x11", "linux", "cros")


def detect_device_type(user_agent: Optional[str]) -> str:
    """Classify a user agent as desktop, mobile, tablet or unknown."""
    if not user_agent:
        return "unknown"
    ua = user_agent.lower()
    if any(marker in ua for marker in _TABLET_MARKERS):
        return "tablet"
    # Android without "mobile" is a tablet
    if "android" in ua and "mobile" not in ua:
        return "tablet"
    if any(marker in ua for marker in _MOBILE_MARKERS):
        return "mobile"
    if any(marker in ua for marker in _DESKTOP_MARKERS):
        return "desktop"
    return "unknown"


@dataclass(frozen=True)
class ClientMeta:
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_name: Optional[str] = None

    @property
    def device_type(self) -> str:
        return detect_device_type(self.user_agent)


class SessionRegistry:
    """Bookkeeping for logical login sessions.

    Sessions are persisted in the account store; active ids are mirrored in
    the cache per account so bulk revocation and liveness checks do not have
    to scan the store.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: RedisCache,
        settings: Settings,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._now = now

    async def create(
        self,
        account_id: str,
        meta: Optional[ClientMeta] = None,
        *,
        auth_method: str = "password",
        tenant_id: str = "public",
    ) -> Session:
        meta = meta or ClientMeta()
        session = Session.new(
            account_id,
            ttl_days=self.settings.session_ttl_days,
            ip_addr=meta.ip_addr,
            user_agent=meta.user_agent,
            device_type=meta.device_type,
            device_name=meta.device_name,
            auth_method=auth_method,
            tenant_id=tenant_id,
            now=self._now(),
        )
        session = self.store.create_session(session)
        ttl_seconds = int((session.expires_at - self._now()).total_seconds())
        await self.cache.cache_session(session.id, account_id, ttl_seconds)
        logger.info(
            "session_created",
            account_id=account_id,
            session_id=session.id,
            device_type=session.device_type,
            auth_method=auth_method,
        )
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    async def is_active(self, session_id: str, account_id: Optional[str] = None) -> bool:
        session = self.store.get_session(session_id)
        if not session or not session.is_active(self._now()):
            return False
        if account_id and session.account_id != account_id:
            return False
        return await self.cache.get_session_account(session_id) == session.account_id

    def list_active(self, account_id: str) -> List[Session]:
        now = self._now()
        return [s for s in self.store.list_sessions(account_id) if s.is_active(now)]

    async def end(self, account_id: str, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if not session or session.account_id != account_id:
            raise NotFoundError("session not found")
        self.store.revoke_session(session_id, now=self._now())
        await self.cache.revoke_session(session_id, account_id)
        logger.info("session_ended", account_id=account_id, session_id=session_id)

    async def end_all(self, account_id: str, except_session_id: Optional[str] = None) -> int:
        revoked = self.store.revoke_account_sessions(
            account_id, now=self._now(), except_session_id=except_session_id
        )
        await self.cache.revoke_account_sessions(account_id, except_session_id)
        logger.info(
            "sessions_ended",
            account_id=account_id,
            count=len(revoked),
            kept_session_id=except_session_id,
        )
        return len(revoked)

    def touch(self, session_id: str) -> None:
        self.store.touch_session(session_id, self._now())
