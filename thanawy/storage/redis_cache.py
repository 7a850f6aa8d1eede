from __future__ import annotations

import hashlib
import time
from typing import Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume for a token bucket keyed per subject.
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

# Record one failed second-factor attempt; returns {locked, attempts}.
# attempts is -1 when the user was already locked before this call.
MFA_ATTEMPT_SCRIPT = """
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


def rate_key(key: str) -> str:
    """Hash rate-limit subjects so user input cannot collide on delimiters."""
    return "thanawy:rate:" + hashlib.sha256(key.encode()).hexdigest()


def refresh_revoked_key(jti: str) -> str:
    return f"thanawy:refresh:revoked:{jti}"


def mfa_keys(user_id: str) -> Tuple[str, str]:
    return f"thanawy:mfa:lockout:{user_id}", f"thanawy:mfa:attempts:{user_id}"


def _rate_result(
    result, return_remaining: bool
) -> Union[bool, Tuple[bool, int, int]]:
    allowed, tokens, reset_after = result
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return allowed_bool, max(0, int(float(tokens))), int(reset_after or 0)
    return allowed_bool


class RedisCache:
    """Advisory Redis state: rate limits, refresh-token revocation marks and
    second-factor lockouts. Session validity never depends on it."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        # A short-lived sync client keeps the async one off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        result = await self._token_bucket(
            keys=[rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _rate_result(result, return_remaining)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self.client.set(refresh_revoked_key(jti), "1", ex=max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(refresh_revoked_key(jti)))

    async def check_mfa_lockout(self, user_id: str) -> bool:
        lockout_key, _ = mfa_keys(user_id)
        return bool(await self.client.exists(lockout_key))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed attempt and trigger the lockout once the limit is hit.

        Returns ``(locked_out, attempts)``.
        """
        result = await self._mfa_attempt(
            keys=list(mfa_keys(user_id)), args=[max_attempts, lockout_seconds]
        )
        return bool(result[0]), int(result[1])

    async def clear_mfa_attempts(self, user_id: str) -> None:
        _, attempts_key = mfa_keys(user_id)
        await self.client.delete(attempts_key)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same surface as :class:`RedisCache` over a synchronous client.

    Used under pytest, where an async client would bind to whichever event
    loop first touched it.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        result = self._token_bucket(
            keys=[rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _rate_result(result, return_remaining)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        self.client.set(refresh_revoked_key(jti), "1", ex=max(1, ttl_seconds))

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(self.client.exists(refresh_revoked_key(jti)))

    async def check_mfa_lockout(self, user_id: str) -> bool:
        lockout_key, _ = mfa_keys(user_id)
        return bool(self.client.exists(lockout_key))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        result = self._mfa_attempt(
            keys=list(mfa_keys(user_id)), args=[max_attempts, lockout_seconds]
        )
        return bool(result[0]), int(result[1])

    async def clear_mfa_attempts(self, user_id: str) -> None:
        _, attempts_key = mfa_keys(user_id)
        self.client.delete(attempts_key)

    async def close(self) -> None:
        self.client.close()


__all__ = [
    "RedisCache",
    "SyncRedisCache",
    "TOKEN_BUCKET_SCRIPT",
    "MFA_ATTEMPT_SCRIPT",
    "rate_key",
]
