import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_time: float
    total_hits: int

    def headers(self, now: float = None) -> Dict[str, str]:
        now = time.time() if now is None else now
        headers = {
            'X-RateLimit-Limit': str(self.limit),
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': str(math.ceil(self.reset_time)),
        }
        if not self.allowed:
            headers['Retry-After'] = str(self.retry_after(now))
        return headers

    def retry_after(self, now: float = None) -> int:
        now = time.time() if now is None else now
        return max(0, math.ceil(self.reset_time - now))

class RateLimiter:
    """Fixed-window request counter, one window per key, held in process memory"""

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._next_cleanup = 0.0

    def hit(self, key: str) -> RateLimitResult:
        """Count one request for key and report whether it is within the limit"""
        now = self.clock()
        with self._lock:
            count, reset_time = self.windows.get(key, (0, 0.0))
            if reset_time <= now:
                count, reset_time = 0, now + self.window_seconds
            count += 1
            self.windows[key] = (count, reset_time)
            if now >= self._next_cleanup:
                self._cleanup(now)

        return RateLimitResult(
            allowed=count <= self.max_requests,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_time=reset_time,
            total_hits=count
        )

    def reset(self, key: str) -> None:
        with self._lock:
            self.windows.pop(key, None)

    def _cleanup(self, now: float) -> None:
        # Caller holds the lock; sweeps at most once per window
        self._next_cleanup = now + self.window_seconds
        expired = [key for key, (_, reset_time) in self.windows.items() if reset_time <= now]
        for key in expired:
            del self.windows[key]
