"""
Rate limiting. In-memory sliding window per key (e.g. per IP).
Used for POST /login and POST /token to mitigate brute force and abuse.
"""
import math
import threading
import time

from oidc_provider.errors import RateLimitedError

_WINDOW_SECONDS = 60
# Sweep idle keys once the table reaches this many entries
_PRUNE_AT = 1024


class SlidingWindowLimiter:
    def __init__(self, limit: int, window_seconds: int = _WINDOW_SECONDS, clock=time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._store: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._prune_at = _PRUNE_AT

    def check_and_consume(self, key: str) -> tuple[bool, int | None]:
        """
        Check if the key is under the limit for the sliding window; if so, record this request.
        Returns (allowed, retry_after_seconds). When not allowed, retry_after_seconds is the
        suggested Retry-After value (>= 1).
        """
        if self.limit <= 0:
            return True, None
        now = self._clock()
        with self._lock:
            cutoff = now - self.window_seconds
            if len(self._store) >= self._prune_at:
                self._prune(cutoff)
                self._prune_at = max(_PRUNE_AT, 2 * len(self._store))
            timestamps = self._store.setdefault(key, [])
            timestamps[:] = [t for t in timestamps if t > cutoff]
            if len(timestamps) >= self.limit:
                oldest = min(timestamps)
                retry_after = max(1, math.ceil(self.window_seconds - (now - oldest)))
                return False, retry_after
            timestamps.append(now)
            return True, None

    def _prune(self, cutoff: float) -> int:
        idle = [k for k, ts in self._store.items() if not ts or max(ts) <= cutoff]
        for k in idle:
            del self._store[k]
        return len(idle)

    def prune(self) -> int:
        """Drop keys with no requests left in the window. Returns the number removed."""
        with self._lock:
            return self._prune(self._clock() - self.window_seconds)

    @property
    def tracked_keys(self) -> int:
        return len(self._store)


def enforce(limiter: SlidingWindowLimiter, key: str | None) -> None:
    """Raise RateLimitedError (429 + Retry-After) when key is over its limit."""
    allowed, retry_after = limiter.check_and_consume(key or "unknown")
    if not allowed:
        raise RateLimitedError(retry_after)
