"""Per-client daily quota, a fixed-window rate limiter and client identity strategies."""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Protocol

from fastapi import Request
from sqlalchemy.engine import Engine

from app import db
from app.config import (
    DAILY_QUOTA_PER_IP,
    QUOTA_KEY_STRATEGY,
    RATE_LIMIT_CONVERT_MAX,
    RATE_LIMIT_CONVERT_WINDOW_SECONDS,
    TRUST_PROXY_HEADERS,
)
from app.errors import QuotaExceededError, RateLimitError

logger = logging.getLogger("converter.quota")


@dataclass
class QuotaRecord:
    count: int
    reset_at: date


class QuotaStore(Protocol):
    def consume(self, client_id: str, window: date, limit: int) -> bool: ...

    def count(self, client_id: str, window: date) -> int: ...


class InMemoryQuotaStore:
    """Process-local counters. Increment-and-compare happens under one lock."""

    def __init__(self):
        self._records: dict[str, QuotaRecord] = {}
        self._lock = threading.Lock()

    def consume(self, client_id: str, window: date, limit: int) -> bool:
        with self._lock:
            record = self._records.get(client_id)
            if record is None or record.reset_at < window:
                record = QuotaRecord(count=0, reset_at=window)
                self._records[client_id] = record
            if record.count >= limit:
                return False
            record.count += 1
            return True

    def count(self, client_id: str, window: date) -> int:
        with self._lock:
            record = self._records.get(client_id)
            if record is None or record.reset_at < window:
                return 0
            return record.count

    def get(self, client_id: str) -> Optional[QuotaRecord]:
        return self._records.get(client_id)


class DatabaseQuotaStore:
    """Counters shared by every process using the same database."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine

    def consume(self, client_id: str, window: date, limit: int) -> bool:
        return db.consume_quota(client_id, window.isoformat(), limit, engine=self.engine)

    def count(self, client_id: str, window: date) -> int:
        return db.get_quota_count(client_id, window.isoformat(), engine=self.engine)


class QuotaTracker:
    def __init__(
        self,
        daily_limit: int = DAILY_QUOTA_PER_IP,
        store: Optional[QuotaStore] = None,
        today: Callable[[], date] = date.today,
    ):
        self.daily_limit = daily_limit
        self.store = store or InMemoryQuotaStore()
        self._today = today

    def check_and_consume(self, client_id: str) -> bool:
        """Count one request. False (and nothing counted) once the daily limit is reached."""
        allowed = self.store.consume(client_id, self._today(), self.daily_limit)
        if not allowed:
            logger.warning("Daily quota exceeded for %s (limit %s)", client_id, self.daily_limit)
        return allowed

    def remaining(self, client_id: str) -> int:
        return max(0, self.daily_limit - self.store.count(client_id, self._today()))

    def enforce(self, client_id: str) -> None:
        if not self.check_and_consume(client_id):
            raise QuotaExceededError(
                f"Daily processing quota exceeded ({self.daily_limit} requests)",
                details={"dailyQuota": self.daily_limit},
            )


class RateLimiter:
    """Fixed-window request counter per key. ``max_requests`` of 0 disables it."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_CONVERT_MAX,
        window_seconds: float = RATE_LIMIT_CONVERT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> bool:
        if self.max_requests <= 0:
            return True
        now = self._clock()
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= self.window_seconds:
                start, count = now, 0
            if count >= self.max_requests:
                return False
            self._windows[key] = (start, count + 1)
            if len(self._windows) > 10_000:
                self._prune(now)
            return True

    def _prune(self, now: float) -> None:
        for key, (start, _) in list(self._windows.items()):
            if now - start >= self.window_seconds:
                del self._windows[key]

    def enforce(self, key: str) -> None:
        if not self.hit(key):
            logger.warning("Rate limit hit for %s", key)
            raise RateLimitError(
                "Too many conversion requests. Please try again later.",
                details={"limit": self.max_requests, "windowSeconds": self.window_seconds},
            )


def client_ip(request: Request, trust_proxy: bool = TRUST_PROXY_HEADERS) -> str:
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def ip_key(request: Request) -> str:
    return client_ip(request)


def ip_user_agent_key(request: Request) -> str:
    return f"{client_ip(request)}-{request.headers.get('user-agent') or 'unknown'}"


CLIENT_KEY_STRATEGIES: dict[str, Callable[[Request], str]] = {
    "ip": ip_key,
    "ip_user_agent": ip_user_agent_key,
}


def get_client_key_strategy(name: str = QUOTA_KEY_STRATEGY) -> Callable[[Request], str]:
    strategy = CLIENT_KEY_STRATEGIES.get(name)
    if strategy is None:
        logger.warning("Unknown QUOTA_KEY_STRATEGY %s, using ip", name)
        return ip_key
    return strategy
