"""Rate-limit policy: enforce request quotas per endpoint with a sliding window."""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int
    window_seconds: float


@dataclass
class RateLimitState:
    """Track request history for a single endpoint."""
    quota: RateLimitQuota
    clock: Callable[[], float] = time.monotonic
    request_times: List[float] = field(default_factory=list)

    def _prune(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]

    def is_allowed(self) -> bool:
        """Check if a new request is allowed under the quota."""
        self._prune(self.clock())
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(self.clock())

    def time_until_allowed(self) -> float:
        """Return seconds until next request is allowed. 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - self.clock())


class RateLimitManager:
    """Enforce rate-limit quotas per endpoint."""

    # Binance spot: order placement is the tightest bucket
    DEFAULT_QUOTAS = {
        "/api/v3/order": RateLimitQuota(requests_per_window=10, window_seconds=1),
        "/api/v3/orderList/oco": RateLimitQuota(requests_per_window=10, window_seconds=1),
        "default": RateLimitQuota(requests_per_window=20, window_seconds=1),
    }

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None, clock: Callable[[], float] = time.monotonic):
        self.quotas = quotas or self.DEFAULT_QUOTAS.copy()
        self.clock = clock
        self.states: Dict[str, RateLimitState] = {}

    @classmethod
    def from_config(cls, orders_per_second: int, default_per_second: int) -> "RateLimitManager":
        order_quota = RateLimitQuota(requests_per_window=orders_per_second, window_seconds=1)
        return cls({
            "/api/v3/order": order_quota,
            "/api/v3/orderList/oco": order_quota,
            "default": RateLimitQuota(requests_per_window=default_per_second, window_seconds=1),
        })

    def _get_state(self, endpoint: str) -> RateLimitState:
        if endpoint not in self.states:
            quota = self.quotas.get(endpoint, self.quotas.get("default"))
            self.states[endpoint] = RateLimitState(quota=quota, clock=self.clock)
        return self.states[endpoint]

    def is_allowed(self, endpoint: str) -> bool:
        return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        return self._get_state(endpoint).time_until_allowed()

    async def wait_if_needed(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Wait until a request is allowed, then record it.

        Returns:
            True if allowed (or waited successfully), False if max_wait would be exceeded
        """
        start = self.clock()
        while not self.is_allowed(endpoint):
            wait_time = self.time_until_allowed(endpoint)
            elapsed = self.clock() - start
            if elapsed + wait_time > max_wait:
                return False
            await asyncio.sleep(wait_time)

        self.record_request(endpoint)
        return True
