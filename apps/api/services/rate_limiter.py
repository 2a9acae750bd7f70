"""In-memory sliding-window rate limiter.

Process-local and not durable: state loss on restart is acceptable and limits
are approximate across workers. No per-key locking; concurrent requests on the
same key may both slip through at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Dict, List, Mapping, Optional


@dataclass(frozen=True)
class RateLimitConfig:
    window_ms: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    remaining: int
    reset_ms: int


API_USER_LIMIT = RateLimitConfig(window_ms=60 * 1000, max_requests=100)
GLOBAL_IP_LIMIT = RateLimitConfig(window_ms=60 * 1000, max_requests=200)
CHECKOUT_LIMIT = RateLimitConfig(window_ms=60 * 60 * 1000, max_requests=5)
WEBHOOK_LIMIT = RateLimitConfig(window_ms=60 * 1000, max_requests=100)
AI_GENERATION_LIMIT = RateLimitConfig(window_ms=60 * 1000, max_requests=10)
REFERRAL_APPLY_LIMIT = RateLimitConfig(window_ms=60 * 60 * 1000, max_requests=10)


def _now_ms() -> int:
    return int(time.time() * 1000)


class SlidingWindowRateLimiter:
    def __init__(self):
        self._store: Dict[str, List[int]] = {}
        # Longest window each key has been checked against
        self._windows: Dict[str, int] = {}

    def check(
        self,
        key: str,
        window_ms: int,
        max_requests: int,
        now_ms: Optional[int] = None,
    ) -> RateLimitResult:
        """Record a request for ``key`` unless it would exceed the window quota."""
        now = _now_ms() if now_ms is None else int(now_ms)
        window_start = now - int(window_ms)

        timestamps = [ts for ts in self._store.get(key, []) if ts > window_start]
        self._store[key] = timestamps
        self._windows[key] = max(self._windows.get(key, 0), int(window_ms))

        if len(timestamps) >= max_requests:
            reset_ms = timestamps[0] + int(window_ms) - now if timestamps else int(window_ms)
            return RateLimitResult(limited=True, remaining=0, reset_ms=max(0, reset_ms))

        timestamps.append(now)
        return RateLimitResult(
            limited=False,
            remaining=max_requests - len(timestamps),
            reset_ms=int(window_ms),
        )

    def check_config(self, key: str, config: RateLimitConfig, now_ms: Optional[int] = None) -> RateLimitResult:
        return self.check(key, config.window_ms, config.max_requests, now_ms=now_ms)

    def sweep(self, now_ms: Optional[int] = None) -> int:
        """Drop keys with no timestamps inside their window. Returns how many were dropped."""
        now = _now_ms() if now_ms is None else int(now_ms)
        stale = [
            key
            for key, timestamps in list(self._store.items())
            if not timestamps or timestamps[-1] <= now - self._windows.get(key, 0)
        ]
        for key in stale:
            self._store.pop(key, None)
            self._windows.pop(key, None)
        return len(stale)

    def clear(self) -> None:
        self._store.clear()
        self._windows.clear()

    def __len__(self) -> int:
        return len(self._store)


rate_limiter = SlidingWindowRateLimiter()


# ============= Keys =============


def checkout_key(user_id: str) -> str:
    return f"checkout:{user_id}"


def ai_generation_key(user_id: str) -> str:
    return f"ai-gen:{user_id}"


def get_client_ip(headers: Mapping[str, str], peer_host: Optional[str] = None) -> str:
    """Client IP, most trusted proxy header first.

    Assumes the service sits behind Cloudflare or another trusted proxy;
    X-Forwarded-For can be spoofed otherwise.
    """
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if peer_host:
        return peer_host
    return "unknown"
