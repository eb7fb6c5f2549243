import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Async token bucket shared by every caller of one external API.

    Holds up to `capacity` tokens and refills at `refill_rate` tokens per second.
    `clock` and `sleep` are injectable so tests can drive time by hand.
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be positive")

        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens without waiting; False if not enough are available."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: int = 1) -> None:
        """Wait until `tokens` are available and take them."""
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.capacity}")

        # Callers queue on the lock so tokens are handed out in arrival order
        async with self._lock:
            while not self.try_acquire(tokens):
                wait = (tokens - self._tokens) / self.refill_rate
                logger.debug(f"Rate limit reached, waiting {wait:.2f}s")
                await self._sleep(wait)
