# Per-user message rate limiting (in memory, per process), backed by `limits`

import time

from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter


class MessageRateLimiter:
    def __init__(self, max_messages=50, window_seconds=60, storage=None):
        self.item = RateLimitItemPerSecond(max_messages, window_seconds)
        self._limiter = FixedWindowRateLimiter(storage or MemoryStorage())

    def hit(self, user_id):
        # Count one message; returns (allowed, remaining, seconds until reset)
        key = str(user_id)
        allowed = self._limiter.hit(self.item, 'messages', key)
        stats = self._limiter.get_window_stats(self.item, 'messages', key)
        return allowed, stats.remaining, max(stats.reset_time - time.time(), 0.0)
