"""Ingress guards for the webhook endpoint: per-client rate limits and source checks."""

import asyncio
import logging
import time
from collections import defaultdict, deque
from ipaddress import ip_address, ip_network
from typing import Deque, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError
from starlette.requests import Request

logger = logging.getLogger("ordersync.rate_limit")

_MAX_HEADER_LEN = 2048
_MAX_FORWARDED_HOPS = 20


class RateLimiter(Protocol):
    window_seconds: int

    async def allow(self, key: str) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


class InMemoryRateLimiter:
    """Sliding-window counter per key, local to one process."""

    def __init__(self, limit: int, *, window_seconds: int = 60, idle_minutes: int = 10) -> None:
        self.limit = max(1, int(limit))
        self.window_seconds = max(1, int(window_seconds))
        self.idle_seconds = max(60, idle_minutes * 60)
        self._hits: dict[str, Deque[float]] = defaultdict(deque)
        self._last_prune = 0.0
        self._lock = asyncio.Lock()

    async def allow(self, key: str) -> bool:
        async with self._lock:
            now = time.time()
            self._prune_idle(now)
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    async def reset(self) -> None:
        async with self._lock:
            self._hits.clear()
            self._last_prune = 0.0

    async def close(self) -> None:
        return None

    def _prune_idle(self, now: float) -> None:
        if now - self._last_prune < 60:
            return
        cutoff = now - self.idle_seconds
        for key in [key for key, hits in self._hits.items() if not hits or hits[-1] < cutoff]:
            del self._hits[key]
        self._last_prune = now


SLIDING_WINDOW_LUA = r"""
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local ttl_seconds = tonumber(ARGV[3])

local t = redis.call('TIME')
local now_ms = (t[1] * 1000) + math.floor(t[2] / 1000)

redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now_ms - window_ms)
if redis.call('ZCARD', KEYS[1]) >= limit then
  return 0
end

local seq = redis.call('INCR', KEYS[2])
redis.call('ZADD', KEYS[1], now_ms, tostring(now_ms) .. ':' .. tostring(seq))
redis.call('EXPIRE', KEYS[1], ttl_seconds)
redis.call('EXPIRE', KEYS[2], ttl_seconds)
return 1
"""


class RedisRateLimiter:
    """Sliding window shared by every replica through one Lua script.

    When Redis is unreachable the limiter serves from a local in-memory window
    for ``fail_open_seconds`` before trying Redis again.
    """

    key_prefix = "ordersync:webhook-rate"

    def __init__(
        self,
        redis_url: str | None,
        limit: int,
        *,
        window_seconds: int = 60,
        idle_minutes: int = 10,
        fail_open_seconds: int = 300,
        redis_client=None,
    ) -> None:
        self.limit = max(1, int(limit))
        self.window_seconds = max(1, int(window_seconds))
        self.ttl_seconds = max(self.window_seconds + 2, idle_minutes * 60)
        self.fail_open_seconds = max(1, fail_open_seconds)
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=False)
        self._fallback = InMemoryRateLimiter(limit, window_seconds=window_seconds, idle_minutes=idle_minutes)
        self._script_sha: str | None = None
        self._fail_open_until = 0.0

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        if now < self._fail_open_until:
            return await self._fallback.allow(key)
        try:
            allowed = await self._run_script(f"{self.key_prefix}:{key}", f"{self.key_prefix}:{key}:seq")
        except RedisError as exc:
            await self._fallback.reset()
            self._fail_open_until = now + self.fail_open_seconds
            logger.warning(
                "rate_limit_redis_unavailable",
                extra={"extra": {"error": type(exc).__name__, "fail_open_seconds": self.fail_open_seconds}},
            )
            return await self._fallback.allow(key)
        if self._fail_open_until:
            self._fail_open_until = 0.0
            logger.info("rate_limit_redis_recovered")
        return bool(allowed)

    async def reset(self) -> None:
        try:
            cursor = 0
            while True:
                cursor, keys = await self.redis.scan(cursor=cursor, match=f"{self.key_prefix}:*", count=100)
                if keys:
                    await self.redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError:
            logger.warning("rate_limit_reset_failed")
        await self._fallback.reset()

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("rate_limit_close_failed")

    async def _run_script(self, hits_key: str, seq_key: str) -> int:
        args = (self.limit, self.window_seconds * 1000, self.ttl_seconds)
        if self._script_sha is None:
            self._script_sha = await self.redis.script_load(SLIDING_WINDOW_LUA)
        try:
            return await self.redis.evalsha(self._script_sha, 2, hits_key, seq_key, *args)
        except ResponseError as exc:
            if "NOSCRIPT" not in str(exc):
                raise
        self._script_sha = None
        return await self.redis.eval(SLIDING_WINDOW_LUA, 2, hits_key, seq_key, *args)


def create_rate_limiter(app_settings) -> RateLimiter:
    limit = app_settings.webhook_rate_limit_per_minute
    window = app_settings.webhook_rate_limit_window_seconds
    if app_settings.redis_url:
        return RedisRateLimiter(
            app_settings.redis_url,
            limit,
            window_seconds=window,
            idle_minutes=app_settings.rate_limit_cleanup_minutes,
            fail_open_seconds=app_settings.rate_limit_fail_open_seconds,
        )
    return InMemoryRateLimiter(limit, window_seconds=window, idle_minutes=app_settings.rate_limit_cleanup_minutes)


def _in_cidrs(host: str, cidrs: list[str]) -> bool:
    try:
        address = ip_address(host)
    except ValueError:
        return False
    for cidr in cidrs:
        try:
            if address in ip_network(cidr, strict=False):
                return True
        except ValueError:
            continue
    return False


def _forwarded_for(header: str) -> str | None:
    # RFC 7239: left-most element, ``for=`` directive, optional quotes, brackets and port
    for directive in header.split(",")[0].split(";"):
        directive = directive.strip()
        if not directive.lower().startswith("for="):
            continue
        value = directive[4:].strip('"')
        if value.startswith("["):
            end = value.find("]")
            if end == -1:
                return None
            value = value[1:end]
        elif value.count(":") == 1:
            value = value.split(":")[0]
        try:
            ip_address(value)
        except ValueError:
            return None
        return value
    return None


def _x_forwarded_for(header: str) -> str | None:
    hops = [hop.strip() for hop in header.split(",")]
    if not hops or len(hops) > _MAX_FORWARDED_HOPS:
        return None
    try:
        ip_address(hops[0])
    except ValueError:
        return None
    return hops[0]


def resolve_client_ip(request: Request, *, trust_proxy_headers: bool, trusted_proxies: list[str]) -> str:
    """Client address for rate limiting and source checks.

    Forwarded headers are honoured only when the TCP peer is one of
    ``trusted_proxies`` (single IPs or CIDRs); otherwise the peer itself is
    the client, so arbitrary callers cannot spoof their address.
    """
    peer = request.client.host if request.client and request.client.host else "unknown"
    if not trust_proxy_headers or not _in_cidrs(peer, trusted_proxies):
        return peer
    forwarded = request.headers.get("forwarded")
    if forwarded and len(forwarded) <= _MAX_HEADER_LEN:
        extracted = _forwarded_for(forwarded)
        if extracted:
            return extracted
    xff = request.headers.get("x-forwarded-for")
    if xff and len(xff) <= _MAX_HEADER_LEN:
        extracted = _x_forwarded_for(xff)
        if extracted:
            return extracted
    return peer


def is_known_source(client_ip: str, allowed_cidrs: list[str]) -> bool:
    """True when no allowlist is configured, the caller is loopback, or it sits in an allowed range."""
    if not allowed_cidrs:
        return True
    try:
        if ip_address(client_ip).is_loopback:
            return True
    except ValueError:
        return False
    return _in_cidrs(client_ip, allowed_cidrs)
