"""
Async token bucket rate limiting for Deribit requests.

Each endpoint category gets its own bucket. A burst of up to `capacity`
requests can go out immediately; after that the category is throttled to a
steady `refill_rate` per second. The bucket map is guarded by an
asyncio.Lock held only for the refill/decrement, never across a sleep.
"""

import asyncio
import logging
import math
import time
from collections.abc import Mapping
from enum import Enum

logger = logging.getLogger(__name__)

# Delay between polls when a bucket reports a token is already due
POLL_INTERVAL = 0.01


class RateLimitCategory(Enum):
    """Categories of rate limits based on the Deribit API documentation."""
    TRADING = "trading"
    MARKET_DATA = "market_data"
    ACCOUNT = "account"
    AUTH = "auth"
    GENERAL = "general"


# (capacity, refill_rate per second)
DEFAULT_LIMITS: dict[RateLimitCategory, tuple[int, int]] = {
    RateLimitCategory.TRADING: (250, 200),
    RateLimitCategory.MARKET_DATA: (500, 400),
    RateLimitCategory.ACCOUNT: (200, 150),
    RateLimitCategory.AUTH: (50, 30),
    RateLimitCategory.GENERAL: (300, 200),
}

_CATEGORY_PATTERNS: tuple[tuple[RateLimitCategory, tuple[str, ...]], ...] = (
    (RateLimitCategory.TRADING, (
        '/private/buy', '/private/sell', '/private/cancel', '/private/edit',
    )),
    (RateLimitCategory.MARKET_DATA, (
        '/public/ticker', '/public/get_order_book',
        '/public/get_last_trades', '/public/get_instruments',
    )),
    (RateLimitCategory.ACCOUNT, (
        '/private/get_account_summary', '/private/get_positions',
        '/private/get_subaccounts',
    )),
    (RateLimitCategory.AUTH, ('/public/auth', '/private/logout')),
)


def categorize_endpoint(path: str) -> RateLimitCategory:
    """Map a request path to its rate limit category.

    Patterns are checked in a fixed order and the first match wins, so a
    path that could match several patterns always lands in the same bucket.
    """
    for category, patterns in _CATEGORY_PATTERNS:
        if any(pattern in path for pattern in patterns):
            return category
    return RateLimitCategory.GENERAL


class TokenBucket:
    """A single category's rate budget with passive refill.

    Tokens are whole numbers. Refill adds floor(elapsed * refill_rate) and
    only moves `last_refill` forward when at least one token was added, so
    fractional progress carries over to the next check.
    """

    def __init__(self, capacity: int, refill_rate: int):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if refill_rate < 1:
            raise ValueError(f"refill_rate must be >= 1, got {refill_rate}")
        self.capacity = capacity
        self.tokens = capacity
        self.refill_rate = refill_rate
        self.last_refill = time.monotonic()

    def try_consume(self) -> bool:
        """Take one token if available. Returns False without side effects otherwise."""
        self.refill()
        if self.tokens > 0:
            self.tokens -= 1
            return True
        return False

    def time_until_token(self) -> float:
        """Estimated seconds until the next token. Zero if one is available now."""
        if self.tokens > 0:
            return 0.0
        return 1.0 / self.refill_rate

    def refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        tokens_to_add = math.floor(elapsed * self.refill_rate)
        if tokens_to_add > 0:
            self.tokens = min(self.capacity, self.tokens + tokens_to_add)
            self.last_refill = now

    def __repr__(self) -> str:
        return (f"TokenBucket(capacity={self.capacity}, tokens={self.tokens}, "
                f"refill_rate={self.refill_rate})")


class RateLimiter:
    """Per-category admission control for every outbound request.

    Buckets are created once at construction for every RateLimitCategory
    and the key set never changes. Pass `limits` to override the defaults
    for some categories::

        limiter = RateLimiter(limits={RateLimitCategory.TRADING: (2, 1)})
        await limiter.wait_for_permission(RateLimitCategory.TRADING)

    One instance is meant to be shared by every client handle talking to
    the same account.
    """

    def __init__(self, limits: Mapping[RateLimitCategory, tuple[int, int]] | None = None):
        merged = dict(DEFAULT_LIMITS)
        if limits:
            merged.update(limits)
        self._buckets: dict[RateLimitCategory, TokenBucket] = {
            category: TokenBucket(*merged[category]) for category in RateLimitCategory
        }
        self._lock = asyncio.Lock()

    def _bucket(self, category: RateLimitCategory) -> TokenBucket:
        try:
            return self._buckets[category]
        except (KeyError, TypeError):
            raise KeyError(f"Unknown rate limit category: {category!r}") from None

    async def wait_for_permission(self, category: RateLimitCategory) -> None:
        """Wait until a token is available for `category`, then consume it.

        Never times out on its own; wrap in asyncio.wait_for to bound the wait.
        """
        waited = False
        while True:
            async with self._lock:
                bucket = self._bucket(category)
                if bucket.try_consume():
                    if waited:
                        logger.debug(f"Permission granted for {category.value} after throttling")
                    return
                wait = bucket.time_until_token()

            if not waited:
                logger.debug(f"Rate limit reached for {category.value}, waiting {wait:.3f}s")
                waited = True
            await asyncio.sleep(wait if wait > 0 else POLL_INTERVAL)

    async def check_permission(self, category: RateLimitCategory) -> bool:
        """Single non-blocking attempt. False means try again later."""
        async with self._lock:
            return self._bucket(category).try_consume()

    async def get_tokens(self, category: RateLimitCategory) -> int:
        """Current token count for a category (refills first)."""
        async with self._lock:
            bucket = self._bucket(category)
            bucket.refill()
            return bucket.tokens

    async def snapshot(self) -> dict[RateLimitCategory, int]:
        """Token counts for every category, for monitoring."""
        async with self._lock:
            result = {}
            for category, bucket in self._buckets.items():
                bucket.refill()
                result[category] = bucket.tokens
            return result
