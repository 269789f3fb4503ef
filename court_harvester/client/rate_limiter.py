"""
Request rate limiter for the search gateway.
Uses token bucket algorithm with a replenishing reservoir.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict

from court_harvester.logging_config import get_logger

logger = get_logger("client.rate_limiter")


@dataclass
class TokenBucket:
    """Token reservoir shared by every request of one gateway."""
    tokens: float = 20.0
    max_tokens: float = 20.0
    refill_rate: float = 20.0  # tokens per second
    last_refill: float = field(default_factory=time.monotonic)


class RateLimiter:
    """
    Throughput ceiling using token bucket algorithm.
    A depleted reservoir makes callers queue; it never fails them.
    """

    def __init__(
        self,
        requests_per_second: float = 20.0,
        reservoir: int = 20
    ):
        self.bucket = TokenBucket(
            tokens=float(reservoir),
            max_tokens=float(reservoir),
            refill_rate=float(requests_per_second),
        )
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._depleted_count = 0

    def _refill(self):
        """Refill tokens based on elapsed time."""
        bucket = self.bucket
        now = time.monotonic()
        elapsed = now - bucket.last_refill
        bucket.tokens = min(
            bucket.max_tokens,
            bucket.tokens + elapsed * bucket.refill_rate
        )
        bucket.last_refill = now

    @property
    def waiting(self) -> int:
        """Callers currently queued for a token."""
        return self._waiting

    async def acquire(self) -> float:
        """
        Acquire a token.
        Blocks until a token is available.

        Returns:
            Wait time in seconds
        """
        self._waiting += 1
        try:
            async with self._lock:
                self._refill()

                # Wait if no tokens available
                wait_time = 0.0
                if self.bucket.tokens < 1.0:
                    wait_time = (1.0 - self.bucket.tokens) / self.bucket.refill_rate
                    self._depleted_count += 1
                    logger.debug(f"Reservoir depleted, queuing for {wait_time:.3f}s")
                    await asyncio.sleep(wait_time)
                    self._refill()

                # Consume token
                self.bucket.tokens -= 1.0
                return wait_time
        finally:
            self._waiting -= 1

    def get_stats(self) -> Dict:
        """Get rate limiter stats."""
        return {
            "tokens": self.bucket.tokens,
            "max_tokens": self.bucket.max_tokens,
            "refill_rate": self.bucket.refill_rate,
            "waiting": self._waiting,
            "depleted": self._depleted_count,
        }
