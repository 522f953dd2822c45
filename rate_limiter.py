"""
Per-client fixed-window rate limiting with a blocking cooldown.

Each client key gets a window of ``window_seconds`` in which at most
``max_requests`` requests are accepted. The request that finds the window
already full blocks the client for ``block_seconds``. Windows are fixed, not
sliding: a burst right after a reset is allowed.
"""
import math
import threading
import time

import proxy_config


class RateLimitRecord:
    __slots__ = ('key', 'count', 'window_start', 'blocked', 'block_until')

    def __init__(self, key, now):
        self.key = key
        self.count = 1
        self.window_start = now
        self.blocked = False
        self.block_until = 0.0


class RateLimitDecision:
    """Outcome of one check; carries everything the response headers need"""

    def __init__(self, allowed, remaining, reset_at, retry_after=0):
        self.allowed = allowed
        self.remaining = remaining
        self.reset_at = reset_at
        self.retry_after = retry_after

    def headers(self):
        headers = {
            'X-RateLimit-Remaining': str(self.remaining),
            'X-RateLimit-Reset': str(int(math.ceil(self.reset_at))),
        }
        if not self.allowed:
            headers['Retry-After'] = str(self.retry_after)
        return headers

    def __repr__(self):
        return (f"RateLimitDecision(allowed={self.allowed}, remaining={self.remaining}, "
                f"retry_after={self.retry_after})")


class RateLimiter:
    def __init__(self, window_seconds=None, max_requests=None, block_seconds=None,
                 sweep_interval=None, clock=time.time):
        config = proxy_config.RATE_LIMIT_CONFIG
        self.window_seconds = config['window_seconds'] if window_seconds is None else window_seconds
        self.max_requests = config['max_requests'] if max_requests is None else max_requests
        self.block_seconds = config['block_seconds'] if block_seconds is None else block_seconds
        self.sweep_interval = config['sweep_interval'] if sweep_interval is None else sweep_interval
        self.clock = clock
        self.records = {}
        self.lock = threading.Lock()
        self._last_sweep = clock()

    def check(self, client_key):
        """Count one request for ``client_key`` and decide whether to allow it"""
        now = self.clock()

        with self.lock:
            self._maybe_sweep(now)
            record = self.records.get(client_key)

            if record is None:
                self.records[client_key] = RateLimitRecord(client_key, now)
                return self._allow(self.records[client_key])

            if record.blocked and now < record.block_until:
                return self._deny(record, now)

            if now - record.window_start > self.window_seconds:
                record.count = 1
                record.window_start = now
                record.blocked = False
                record.block_until = 0.0
                return self._allow(record)

            if record.count >= self.max_requests:
                record.blocked = True
                record.block_until = now + self.block_seconds
                return self._deny(record, now)

            record.count += 1
            return self._allow(record)

    def _allow(self, record):
        return RateLimitDecision(
            allowed=True,
            remaining=max(self.max_requests - record.count, 0),
            reset_at=record.window_start + self.window_seconds,
        )

    def _deny(self, record, now):
        retry_after = max(int(math.ceil(record.block_until - now)), 1)
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            reset_at=record.block_until,
            retry_after=retry_after,
        )

    def _maybe_sweep(self, now):
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        self._drop_stale(now)

    def sweep(self, now=None):
        """Drop clients whose window has elapsed and who are not blocked"""
        now = self.clock() if now is None else now
        with self.lock:
            return self._drop_stale(now)

    def _drop_stale(self, now):
        stale = [
            key for key, record in self.records.items()
            if now - record.window_start > self.window_seconds
            and (not record.blocked or now >= record.block_until)
        ]
        for key in stale:
            del self.records[key]
        return len(stale)

    def __len__(self):
        return len(self.records)
