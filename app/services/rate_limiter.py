"""Sliding-window rate limiter protecting the order lookup backend.

Each dimension (ip, user, order) is a Redis sorted set of request
timestamps. One Lua script evicts, checks every dimension and only then adds
a token to all of them, so concurrent requests sharing a key cannot race
past the limit. When Redis is missing, disabled or failing the limiter lets
the request through in degraded mode.
"""

import hashlib
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis

from app.config import settings
from app.logging_config import get_logger

logger = get_logger("rate_limiter")

DIMENSIONS = ("ip", "user", "order")

# KEYS: one sorted set per dimension, in priority order.
# ARGV: now_ms, window_ms, member, limit_1..limit_n
SLIDING_WINDOW_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local member = ARGV[3]
for i, key in ipairs(KEYS) do
  redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
  local count = redis.call('ZCARD', key)
  if count >= tonumber(ARGV[3 + i]) then
    redis.call('PEXPIRE', key, window)
    return {0, i}
  end
end
for _, key in ipairs(KEYS) do
  redis.call('ZADD', key, now, member)
  redis.call('PEXPIRE', key, window)
end
return {1, 0}
"""


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    degraded: bool = False
    blocked_by: Optional[str] = None


@dataclass(frozen=True)
class RateLimitConfig:
    enabled: bool
    window_ms: int
    limits: dict
    key_prefix: str

    @classmethod
    def from_settings(cls) -> "RateLimitConfig":
        return cls(
            enabled=settings.order_lookup_rate_limit_enabled,
            window_ms=max(settings.order_lookup_rate_limit_window_ms, 1000),
            limits={
                "ip": max(settings.order_lookup_rate_limit_ip_max, 1),
                "user": max(settings.order_lookup_rate_limit_user_max, 1),
                "order": max(settings.order_lookup_rate_limit_order_max, 1),
            },
            key_prefix=settings.order_lookup_rate_limit_key_prefix,
        )


def normalize_client_ip(client_ip: str | None) -> str | None:
    if not client_ip:
        return None
    first = client_ip.split(",")[0].strip().lower()
    if first.startswith("::ffff:"):
        first = first[len("::ffff:") :]
    return first or None


def hash_identifier(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_key(prefix: str, dimension: str, value: str) -> str:
    return f"{prefix}:{dimension}:{hash_identifier(value)}"


def _parse_script_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


class OrderLookupRateLimiter:
    def __init__(
        self,
        config: RateLimitConfig | None = None,
        redis_url: str | None = None,
        client_factory: Callable[[str], Any] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or RateLimitConfig.from_settings()
        self.redis_url = redis_url if redis_url is not None else settings.redis_url
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock
        self._client = None
        self._script = None
        self._missing_url_warned = False

    @staticmethod
    def _default_client_factory(url: str):
        return redis.Redis.from_url(
            url,
            socket_timeout=settings.order_lookup_rate_limit_socket_timeout_seconds,
            socket_connect_timeout=settings.order_lookup_rate_limit_socket_timeout_seconds,
        )

    def _get_script(self):
        if self._script is None:
            self._client = self._client_factory(self.redis_url)
            self._script = self._client.register_script(SLIDING_WINDOW_SCRIPT)
        return self._script

    def _reset_client(self) -> None:
        client = self._client
        self._client = None
        self._script = None
        if client is not None:
            try:
                client.close()
            except Exception as exc:
                logger.debug(f"Rate limiter client close failed: {exc}")

    def _build_dimensions(
        self, *, order_id: str, user_id: str | None, client_ip: str | None
    ) -> list[tuple[str, str]]:
        values = {
            "ip": normalize_client_ip(client_ip),
            "user": (user_id or "").strip() or None,
            "order": str(order_id).strip(),
        }
        return [(dimension, values[dimension]) for dimension in DIMENSIONS if values[dimension]]

    def consume(
        self,
        *,
        request_id: str,
        order_id: str,
        user_id: str | None = None,
        client_ip: str | None = None,
    ) -> RateLimitDecision:
        if not self.config.enabled:
            return RateLimitDecision(allowed=True, degraded=True)

        if not self.redis_url:
            if not self._missing_url_warned:
                self._missing_url_warned = True
                logger.warning("Order lookup rate limiter has no REDIS_URL; running degraded")
            return RateLimitDecision(allowed=True, degraded=True)

        dimensions = self._build_dimensions(order_id=order_id, user_id=user_id, client_ip=client_ip)
        keys = [build_key(self.config.key_prefix, dimension, value) for dimension, value in dimensions]
        now_ms = int(self._clock() * 1000)
        member = f"{now_ms}:{request_id}:{uuid.uuid4().hex[:8]}"
        args = [now_ms, self.config.window_ms, member] + [
            self.config.limits[dimension] for dimension, _ in dimensions
        ]

        try:
            raw = self._get_script()(keys=keys, args=args)
        except Exception as exc:
            logger.warning(
                "Order lookup rate limiter unavailable; allowing request",
                extra={"context": {"request_id": request_id, "error": str(exc)}},
            )
            self._reset_client()
            return RateLimitDecision(allowed=True, degraded=True)

        if not isinstance(raw, (list, tuple)) or len(raw) < 2:
            logger.warning(f"Unexpected rate limiter script result: {raw!r}")
            return RateLimitDecision(allowed=True, degraded=True)

        allowed_flag = _parse_script_int(raw[0])
        blocked_index = _parse_script_int(raw[1])
        if allowed_flag == 1:
            return RateLimitDecision(allowed=True)
        if allowed_flag == 0 and blocked_index is not None and 1 <= blocked_index <= len(dimensions):
            blocked_by = dimensions[blocked_index - 1][0]
            logger.info(
                "Order lookup rate limited",
                extra={"context": {"request_id": request_id, "blocked_by": blocked_by}},
            )
            return RateLimitDecision(allowed=False, blocked_by=blocked_by)

        logger.warning(f"Unparseable rate limiter script result: {raw!r}")
        return RateLimitDecision(allowed=True, degraded=True)


_rate_limiter: OrderLookupRateLimiter | None = None


def get_rate_limiter() -> OrderLookupRateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        redis_url = None if os.environ.get("PYTEST_CURRENT_TEST") else settings.redis_url
        _rate_limiter = OrderLookupRateLimiter(redis_url=redis_url or "")
    return _rate_limiter
