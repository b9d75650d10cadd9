from __future__ import annotations
import hashlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from fastapi import Request, Response

from storesync.core.errors import RateLimited

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Reset-on-expiry windows held in-process.
# Keys: "rate:<ip>", "oauth:<ip>", "admin:key:<hash>", "strict:<ip>:<path>", "auth:<ip>"

@dataclass
class RateLimitEntry:
    count: int
    reset_at: float
    first_seen: float
    blocked_until: Optional[float] = None

@dataclass
class RateLimitInfo:
    limit: int
    remaining: int
    reset_at: float

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }

    def apply(self, response: Response) -> None:
        response.headers.update(self.headers())


def _retry_after(reset_at: float, now: float) -> int:
    return max(1, math.ceil(reset_at - now))


class RateLimiter:
    """Counts requests per key; the count resets once the window has passed."""

    def __init__(self, limit: int, window_seconds: float, *, name: str = "rate", clock: Clock = time.time):
        if limit < 1 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window = window_seconds
        self.name = name
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}

    def hit(self, key: str) -> RateLimitInfo:
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None or now > entry.reset_at:
            entry = RateLimitEntry(count=0, reset_at=now + self.window, first_seen=now)
            self._entries[key] = entry

        if entry.count >= self.limit:
            retry_after = _retry_after(entry.reset_at, now)
            logger.warning("rate limit exceeded",
                           extra={"key": key, "limiter": self.name, "limit": self.limit, "retry_after": retry_after})
            raise RateLimited(retry_after, headers=RateLimitInfo(self.limit, 0, entry.reset_at).headers())

        entry.count += 1
        return RateLimitInfo(self.limit, max(0, self.limit - entry.count), entry.reset_at)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now > e.reset_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


class AuthRateLimiter:
    """
    Tracks failed authentications per key. Reaching max_attempts pushes the
    entry's reset time out to now + block_seconds; a success deletes it.
    """

    def __init__(self, max_attempts: int, window_seconds: float,
                 block_seconds: Optional[float] = None, *, clock: Clock = time.time):
        self.max_attempts = max_attempts
        self.window = window_seconds
        self.block = block_seconds if block_seconds is not None else window_seconds * 2
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}

    def check(self, key: str) -> None:
        now = self._clock()
        entry = self._entries.get(key)
        if entry and entry.count >= self.max_attempts and now < entry.reset_at:
            retry_after = _retry_after(entry.reset_at, now)
            logger.warning("authentication blocked - too many failed attempts",
                           extra={"key": key, "attempts": entry.count, "retry_after": retry_after})
            raise RateLimited(
                retry_after,
                f"Too many failed authentication attempts. Please try again in {retry_after} seconds.",
                code="TOO_MANY_AUTH_ATTEMPTS",
            )

    def record_failure(self, key: str) -> RateLimitEntry:
        now = self._clock()
        entry = self._entries.get(key)
        if entry and now < entry.reset_at:
            entry.count += 1
        else:
            entry = RateLimitEntry(count=1, reset_at=now + self.window, first_seen=now)
            self._entries[key] = entry

        if entry.count >= self.max_attempts:
            entry.reset_at = now + self.block
            entry.blocked_until = entry.reset_at

        logger.warning("failed authentication attempt recorded",
                       extra={"key": key, "attempts": entry.count, "max_attempts": self.max_attempts})
        return entry

    def record_success(self, key: str) -> None:
        self._entries.pop(key, None)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        return self._entries.get(key)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now > e.reset_at]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()


# ---- key builders ------------------------------------------------------------

def get_client_ip(request: Request) -> str:
    # honor proxies if present; take the first hop
    xf = request.headers.get("x-forwarded-for")
    if xf and xf.split(",")[0].strip():
        return xf.split(",")[0].strip()
    for header in ("x-real-ip", "cf-connecting-ip"):
        if request.headers.get(header):
            return request.headers[header].strip()
    return request.client.host if request.client else "unknown"

def ip_key(prefix: str) -> Callable[[Request], str]:
    return lambda request: f"{prefix}:{get_client_ip(request)}"

def admin_key(request: Request) -> str:
    api_key = request.headers.get("x-api-key")
    if api_key:
        # never keep raw keys in memory maps or logs
        return "admin:key:" + hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:16]
    return f"admin:ip:{get_client_ip(request)}"

def strict_key(request: Request) -> str:
    return f"strict:{get_client_ip(request)}:{request.url.path}"


# ---- FastAPI dependencies ----------------------------------------------------

def rate_limit(name: str, key_func: Callable[[Request], str]):
    """Dependency using the limiter registered under app.state.rate_limiters[name]."""

    async def dependency(request: Request, response: Response) -> None:
        limiter: RateLimiter = request.app.state.rate_limiters[name]
        info = limiter.hit(key_func(request))
        info.apply(response)

    return dependency

limit_by_ip = rate_limit("general", ip_key("rate"))
limit_oauth = rate_limit("oauth", ip_key("oauth"))
limit_admin = rate_limit("admin", admin_key)
limit_strict = rate_limit("strict", strict_key)


def build_rate_limiters(cfg, clock: Clock = time.time) -> Dict[str, object]:
    return {
        "general": RateLimiter(cfg.RATE_LIMIT_MAX_PER_IP, cfg.RATE_LIMIT_WINDOW_SECONDS, name="general", clock=clock),
        "oauth": RateLimiter(cfg.OAUTH_RATE_LIMIT_PER_MINUTE, 60, name="oauth", clock=clock),
        "admin": RateLimiter(cfg.ADMIN_RATE_LIMIT_PER_MINUTE, 60, name="admin", clock=clock),
        "strict": RateLimiter(cfg.STRICT_RATE_LIMIT_PER_MINUTE, 60, name="strict", clock=clock),
        "auth": AuthRateLimiter(cfg.AUTH_MAX_ATTEMPTS, cfg.AUTH_WINDOW_SECONDS, cfg.AUTH_BLOCK_SECONDS, clock=clock),
    }

def purge_rate_limiters(limiters: Dict[str, object]) -> int:
    purged = sum(limiter.purge_expired() for limiter in limiters.values())
    if purged:
        logger.debug(f"purged {purged} expired rate limit entries")
    return purged
