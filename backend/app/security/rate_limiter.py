"""
In-memory sliding-window rate limiting for the HTTP boundary.

Buckets (api, sensitive, download, password, two_factor) come from settings;
the identifier is whatever the caller wants to throttle on (client IP,
user id, transfer id + IP, API key id).
"""
from collections import defaultdict, deque
from threading import Lock
from time import monotonic
from typing import Deque, Dict, Optional

from app.core.config import Settings, get_settings
from app.core.errors import RateLimited


class RateLimiter:
    """Simple in-memory rate limiter for per-identifier operations."""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()
        self._attempts: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def hit(
        self,
        bucket: str,
        identifier: str,
        max_attempts: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> None:
        """
        Record one request against `bucket:identifier`.

        Raises RateLimited (with the seconds until the oldest attempt leaves
        the window) when the bucket is already full.
        """
        if not (max_attempts and window_seconds):
            default_max, default_window = self._settings.rate_limit(bucket)
            max_attempts = max_attempts or default_max
            window_seconds = window_seconds or default_window

        key = f"{bucket}:{identifier}"
        now = monotonic()
        window_start = now - window_seconds

        with self._lock:
            attempts = self._attempts[key]
            while attempts and attempts[0] <= window_start:
                attempts.popleft()

            if len(attempts) >= max_attempts:
                raise RateLimited(retry_after=attempts[0] + window_seconds - now)

            attempts.append(now)

    def reset(self, bucket: Optional[str] = None) -> None:
        with self._lock:
            if bucket is None:
                self._attempts.clear()
                return
            for key in [k for k in self._attempts if k.startswith(f"{bucket}:")]:
                del self._attempts[key]

    def cleanup_old_entries(self, max_age_seconds: int = 3600) -> None:
        """Drop identifiers with no recent attempts (call periodically)."""
        cutoff = monotonic() - max_age_seconds
        with self._lock:
            for key in list(self._attempts):
                attempts = self._attempts[key]
                while attempts and attempts[0] <= cutoff:
                    attempts.popleft()
                if not attempts:
                    del self._attempts[key]


# Global rate limiter instance
_rate_limiter = RateLimiter()


def get_rate_limiter() -> RateLimiter:
    """Get global rate limiter instance."""
    return _rate_limiter
