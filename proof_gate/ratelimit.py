"""In-process rate limiting for the HTTP functions.

Per-process token buckets keyed by tenant (webhook) or caller. Good enough to
blunt a runaway integration; a distributed deployment still wants a limiter
at the proxy.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

DISABLED_SPECS = ("off", "none", "0", "disabled")


@dataclass
class TokenBucket:
    capacity: float
    refill_rate_per_sec: float
    tokens: float
    last_ts: float

    @classmethod
    def new(cls, capacity: float, refill_rate_per_sec: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate_per_sec=refill_rate_per_sec, tokens=capacity, last_ts=now)

    def allow(self, now: float, cost: float = 1.0) -> bool:
        elapsed = max(0.0, now - self.last_ts)
        self.last_ts = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate_per_sec)
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class RateLimiter:
    """Keyed token-bucket limiter.

    New keys are refused once `max_keys` buckets exist, which bounds memory
    when callers send high-cardinality keys.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate_per_sec: float,
        max_keys: int = 20000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity <= 0 or refill_rate_per_sec <= 0:
            raise ValueError("capacity and refill_rate_per_sec must be positive")
        self._capacity = float(capacity)
        self._refill = float(refill_rate_per_sec)
        self._max_keys = int(max_keys) if int(max_keys) > 0 else 20000
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_spec(cls, spec: str, **kwargs) -> Optional["RateLimiter"]:
        """Build a limiter from '120/m' style text; None when disabled."""
        parsed = parse_rate_limit(spec)
        if parsed is None:
            return None
        capacity, per_sec = parsed
        return cls(capacity, per_sec, **kwargs)

    def allow(self, key: str, cost: float = 1.0) -> bool:
        key = key or "_anon"
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                if len(self._buckets) >= self._max_keys:
                    return False
                bucket = TokenBucket.new(self._capacity, self._refill, now)
                self._buckets[key] = bucket
            return bucket.allow(now, cost=cost)


def parse_rate_limit(spec: str) -> Optional[Tuple[float, float]]:
    """Parse '30/m', '10/s' or '500/h' into (capacity, refill_rate_per_sec).

    Returns None for 'off' and friends.
    """
    s = (spec or "").strip().lower()
    if not s:
        raise ValueError("empty rate limit spec")
    if s in DISABLED_SPECS:
        return None
    if "/" not in s:
        raise ValueError("invalid rate limit spec; expected like '30/m' or '10/s'")
    num_str, unit = s.split("/", 1)
    n = float(num_str)
    unit = unit.strip()
    if n <= 0:
        raise ValueError("rate must be positive")
    if unit in ("s", "sec", "second", "seconds"):
        per_sec = n
    elif unit in ("m", "min", "minute", "minutes"):
        per_sec = n / 60.0
    elif unit in ("h", "hr", "hour", "hours"):
        per_sec = n / 3600.0
    else:
        raise ValueError(f"unsupported rate unit: {unit}")
    return float(n), float(per_sec)
