from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Networked cache for short-lived authentication state.

    Holds pending 2FA setups, second-factor attempt counters, consumed
    challenge tokens, revoked refresh tokens, OAuth state, one-time
    verification/reset tokens and the per-account active session index.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic check-and-increment for second-factor failures
    _TWO_FACTOR_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""

    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def _getdel(self, key: str) -> Optional[str]:
        return await self.client.eval(self._GETDEL_SCRIPT, 1, key)

    # pending two-factor setup
    async def put_pending_setup(self, account_id: str, payload: str, ttl_seconds: int) -> None:
        await self.client.set(f"2fa:pending:{account_id}", payload, ex=max(1, ttl_seconds))

    async def get_pending_setup(self, account_id: str) -> Optional[str]:
        return await self.client.get(f"2fa:pending:{account_id}")

    async def delete_pending_setup(self, account_id: str) -> None:
        await self.client.delete(f"2fa:pending:{account_id}")

    # second-factor attempt lockout
    async def check_two_factor_lockout(self, account_id: str) -> bool:
        return bool(await self.client.exists(f"2fa:lockout:{account_id}"))

    async def atomic_two_factor_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> Tuple[bool, int]:
        """Record a failed second-factor attempt and trigger lockout at the threshold.

        Returns:
            Tuple of (is_locked_out, attempts); attempts is -1 when the
            account was already locked out before this call.
        """
        result = await self.client.eval(
            self._TWO_FACTOR_ATTEMPT_SCRIPT,
            2,
            f"2fa:lockout:{account_id}",
            f"2fa:attempts:{account_id}",
            max_attempts,
            lockout_seconds,
        )
        return bool(int(result[0])), int(result[1])

    async def clear_two_factor_attempts(self, account_id: str) -> None:
        await self.client.delete(f"2fa:attempts:{account_id}")

    # single-use tokens
    async def consume_token_once(self, jti: str, ttl_seconds: int) -> bool:
        """Mark a token id as used; False when it had already been used."""
        return bool(
            await self.client.set(f"auth:consumed:{jti}", "1", ex=max(1, ttl_seconds), nx=True)
        )

    async def release_token(self, jti: str) -> None:
        await self.client.delete(f"auth:consumed:{jti}")

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{jti}"))

    # one-time email tokens (verification / password reset), keyed by token hash
    async def put_one_time_token(
        self, purpose: str, token_hash: str, account_id: str, ttl_seconds: int
    ) -> None:
        await self.client.set(f"auth:{purpose}:{token_hash}", account_id, ex=max(1, ttl_seconds))

    async def pop_one_time_token(self, purpose: str, token_hash: str) -> Optional[str]:
        return await self._getdel(f"auth:{purpose}:{token_hash}")

    # OAuth state
    async def set_oauth_state(
        self, state: str, provider: str, ttl_seconds: int, redirect_uri: Optional[str] = None
    ) -> None:
        payload = {"provider": provider, "redirect_uri": redirect_uri}
        await self.client.set(f"auth:oauth:{state}", json.dumps(payload), ex=max(1, ttl_seconds))

    async def pop_oauth_state(self, state: str) -> Optional[Dict[str, Any]]:
        """Atomically get and delete OAuth state to prevent replay."""
        cached = await self._getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        return data if isinstance(data, dict) else None

    # active session index
    async def cache_session(self, session_id: str, account_id: str, ttl_seconds: int) -> None:
        ttl = max(1, ttl_seconds)
        await self.client.set(f"auth:session:{session_id}", account_id, ex=ttl)
        await self.client.sadd(f"auth:account_sessions:{account_id}", session_id)
        await self.client.expire(f"auth:account_sessions:{account_id}", ttl)

    async def get_session_account(self, session_id: str) -> Optional[str]:
        return await self.client.get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str, account_id: Optional[str] = None) -> None:
        await self.client.delete(f"auth:session:{session_id}")
        if account_id:
            await self.client.srem(f"auth:account_sessions:{account_id}", session_id)

    async def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        key = f"auth:account_sessions:{account_id}"
        session_ids = await self.client.smembers(key)
        revoked = 0
        for session_id in session_ids or ():
            if except_session_id and session_id == except_session_id:
                continue
            await self.client.delete(f"auth:session:{session_id}")
            await self.client.srem(key, session_id)
            revoked += 1
        return revoked


class _SyncClientAdapter:
    """Wraps a sync Redis client with the async method signatures RedisCache awaits."""

    def __init__(self, sync_client: Redis):
        self._sync = sync_client

    async def get(self, key: str) -> Optional[str]:
        return self._sync.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False):
        return self._sync.set(key, value, ex=ex, nx=nx)

    async def delete(self, key: str) -> int:
        return self._sync.delete(key)

    async def exists(self, key: str) -> int:
        return self._sync.exists(key)

    async def expire(self, key: str, ttl: int) -> bool:
        return self._sync.expire(key, ttl)

    async def eval(self, script: str, numkeys: int, *keys_and_args: Any) -> Any:
        return self._sync.eval(script, numkeys, *keys_and_args)

    async def sadd(self, key: str, *members: str) -> int:
        return self._sync.sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return self._sync.srem(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        return self._sync.smembers(key)

    def close(self) -> None:
        self._sync.close()


class SyncRedisCache(RedisCache):
    """RedisCache over a synchronous client, used under TEST_MODE.

    Avoids binding connections to per-test event loops while keeping the
    awaitable interface identical to RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.client = _SyncClientAdapter(self._sync_client)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()


class InProcessCache(RedisCache):
    """Single-process stand-in for RedisCache.

    Only constructed under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV; state is
    not shared between instances of the service.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time, sweep_every: int = 256):
        self.redis_url = None
        self._clock = clock
        self._sweep_every = max(1, sweep_every)
        self._writes = 0
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.client = None

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._values.clear()

    def _get(self, key: str) -> Any:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: Any, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._values[key] = (value, expires_at)
        self._writes += 1
        if self._writes >= self._sweep_every:
            self._sweep_expired()

    def _sweep_expired(self) -> int:
        """Drop expired entries; keys such as consumed jtis are rarely read again."""
        self._writes = 0
        now = self._clock()
        expired = [
            key
            for key, (_, expires_at) in self._values.items()
            if expires_at is not None and expires_at <= now
        ]
        for key in expired:
            del self._values[key]
        return len(expired)

    async def _getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._get(key)
            self._values.pop(key, None)
            return value

    async def put_pending_setup(self, account_id: str, payload: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"2fa:pending:{account_id}", payload, max(1, ttl_seconds))

    async def get_pending_setup(self, account_id: str) -> Optional[str]:
        with self._lock:
            return self._get(f"2fa:pending:{account_id}")

    async def delete_pending_setup(self, account_id: str) -> None:
        with self._lock:
            self._values.pop(f"2fa:pending:{account_id}", None)

    async def check_two_factor_lockout(self, account_id: str) -> bool:
        with self._lock:
            return self._get(f"2fa:lockout:{account_id}") is not None

    async def atomic_two_factor_attempt(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> Tuple[bool, int]:
        lockout_key = f"2fa:lockout:{account_id}"
        attempts_key = f"2fa:attempts:{account_id}"
        with self._lock:
            if self._get(lockout_key) is not None:
                return True, -1
            attempts = (self._get(attempts_key) or 0) + 1
            self._set(attempts_key, attempts, lockout_seconds)
            if attempts >= max_attempts:
                self._set(lockout_key, "1", lockout_seconds)
                self._values.pop(attempts_key, None)
                return True, attempts
            return False, attempts

    async def clear_two_factor_attempts(self, account_id: str) -> None:
        with self._lock:
            self._values.pop(f"2fa:attempts:{account_id}", None)

    async def consume_token_once(self, jti: str, ttl_seconds: int) -> bool:
        key = f"auth:consumed:{jti}"
        with self._lock:
            if self._get(key) is not None:
                return False
            self._set(key, "1", max(1, ttl_seconds))
            return True

    async def release_token(self, jti: str) -> None:
        with self._lock:
            self._values.pop(f"auth:consumed:{jti}", None)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        with self._lock:
            self._set(f"auth:refresh:revoked:{jti}", "1", max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        with self._lock:
            return self._get(f"auth:refresh:revoked:{jti}") is not None

    async def put_one_time_token(
        self, purpose: str, token_hash: str, account_id: str, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._set(f"auth:{purpose}:{token_hash}", account_id, max(1, ttl_seconds))

    async def set_oauth_state(
        self, state: str, provider: str, ttl_seconds: int, redirect_uri: Optional[str] = None
    ) -> None:
        payload = {"provider": provider, "redirect_uri": redirect_uri}
        with self._lock:
            self._set(f"auth:oauth:{state}", json.dumps(payload), max(1, ttl_seconds))

    async def cache_session(self, session_id: str, account_id: str, ttl_seconds: int) -> None:
        ttl = max(1, ttl_seconds)
        with self._lock:
            self._set(f"auth:session:{session_id}", account_id, ttl)
            members = set(self._get(f"auth:account_sessions:{account_id}") or ())
            members.add(session_id)
            self._set(f"auth:account_sessions:{account_id}", members, ttl)

    async def get_session_account(self, session_id: str) -> Optional[str]:
        with self._lock:
            return self._get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str, account_id: Optional[str] = None) -> None:
        with self._lock:
            self._values.pop(f"auth:session:{session_id}", None)
            if account_id:
                members = self._get(f"auth:account_sessions:{account_id}")
                if members:
                    members.discard(session_id)

    async def revoke_account_sessions(
        self, account_id: str, except_session_id: Optional[str] = None
    ) -> int:
        key = f"auth:account_sessions:{account_id}"
        revoked = 0
        with self._lock:
            members = self._get(key) or set()
            for session_id in list(members):
                if except_session_id and session_id == except_session_id:
                    continue
                self._values.pop(f"auth:session:{session_id}", None)
                members.discard(session_id)
                revoked += 1
        return revoked
