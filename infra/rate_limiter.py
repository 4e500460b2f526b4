"""
Rate Limiter with Token Bucket Algorithm

Per-provider pre-emptive rate limiting for upstream market data APIs.
Every upstream client acquires a token here before issuing a request.

Default budgets (documented provider limits):
- CoinGecko: 50 requests/minute
- Binance: 1200 requests/minute
- Coinbase: 10000 requests/hour

Buckets are independent: exhausting one provider never delays another.
Waits are bounded; a caller whose wait would exceed the bound receives
RateLimited with the retry-after duration instead of hanging.
"""
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Mapping, Optional

from core.exceptions import RateLimited

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_QUOTAS: Dict[str, Dict[str, float]] = {
    "coingecko": {"max_requests": 50, "interval_seconds": 60.0},
    "binance": {"max_requests": 1200, "interval_seconds": 60.0},
    "coinbase": {"max_requests": 10000, "interval_seconds": 3600.0},
}

# Bounded wait default: this many token refill periods, capped at the interval
DEFAULT_MAX_WAIT_PERIODS = 5.0


@dataclass
class TokenBucket:
    """
    Token bucket for one provider.

    Tokens replenish continuously at max_requests / interval_seconds.
    A waiting caller reserves its token up front, so the balance can go
    negative; later callers then see a proportionally longer wait.
    """
    max_requests: float
    interval_seconds: float
    max_wait_seconds: Optional[float] = None
    clock: Callable[[], float] = time.monotonic
    tokens: float = field(init=False)
    last_refill: float = field(init=False)

    def __post_init__(self):
        if self.max_requests <= 0 or self.interval_seconds <= 0:
            raise ValueError(
                f"Invalid quota: max_requests={self.max_requests}, "
                f"interval_seconds={self.interval_seconds}"
            )
        self.tokens = float(self.max_requests)  # Start full
        self.last_refill = self.clock()

    @property
    def capacity(self) -> float:
        return float(self.max_requests)

    @property
    def refill_rate(self) -> float:
        """Tokens per second"""
        return self.max_requests / self.interval_seconds

    @property
    def max_wait(self) -> float:
        """Longest a caller may be asked to wait for one token"""
        if self.max_wait_seconds is not None:
            return float(self.max_wait_seconds)
        period = 1.0 / self.refill_rate
        return min(period * DEFAULT_MAX_WAIT_PERIODS, self.interval_seconds)

    def refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        """Take tokens if available right now."""
        self.refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def reserve(self, tokens: float = 1.0) -> None:
        """Take tokens unconditionally (caller has agreed to wait for them)."""
        self.refill()
        self.tokens -= tokens

    def wait_time(self, tokens: float = 1.0) -> float:
        """Seconds until tokens are available (0 if available now)."""
        self.refill()
        if self.tokens >= tokens:
            return 0.0
        return (tokens - self.tokens) / self.refill_rate


@dataclass
class RateLimitStats:
    """Per-provider statistics"""
    total_requests: int = 0
    throttled_requests: int = 0
    rejected_requests: int = 0
    total_wait_time_ms: float = 0.0
    max_wait_time_ms: float = 0.0

    def record_wait(self, wait_time_seconds: float) -> None:
        self.total_requests += 1
        if wait_time_seconds > 0:
            self.throttled_requests += 1
            wait_ms = wait_time_seconds * 1000.0
            self.total_wait_time_ms += wait_ms
            self.max_wait_time_ms = max(self.max_wait_time_ms, wait_ms)

    def throttled_pct(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.throttled_requests / self.total_requests) * 100.0


class RateLimiter:
    """
    Per-provider token bucket rate limiter.

    Usage:
        limiter = RateLimiter({"coingecko": {"max_requests": 50, "interval_seconds": 60}})

        # Before making an upstream call (blocks up to the bounded wait)
        limiter.acquire("coingecko")

        # Non-blocking: raises RateLimited immediately if no token is free
        limiter.acquire("coingecko", wait=False)
    """

    def __init__(
        self,
        quotas: Optional[Mapping[str, Mapping[str, float]]] = None,
        default_quota: Optional[Mapping[str, float]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        metrics=None,
    ):
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self._default_quota = dict(default_quota or {"max_requests": 60, "interval_seconds": 60.0})
        self._buckets: Dict[str, TokenBucket] = {}
        self._stats: Dict[str, RateLimitStats] = {}
        self._lock = Lock()

        self.configure(quotas if quotas is not None else DEFAULT_PROVIDER_QUOTAS)

    def configure(self, quotas: Mapping[str, Mapping[str, float]]) -> None:
        """Create or replace provider buckets."""
        with self._lock:
            for provider, quota in quotas.items():
                self._buckets[provider] = self._build_bucket(provider, quota)
                self._stats.setdefault(provider, RateLimitStats())
        logger.info(
            "Configured rate limits: %s",
            ", ".join(
                f"{name}={int(b.max_requests)}/{b.interval_seconds:g}s"
                for name, b in sorted(self._buckets.items())
            ),
        )

    def _build_bucket(self, provider: str, quota: Mapping[str, float]) -> TokenBucket:
        max_requests = quota.get("max_requests")
        interval = quota.get("interval_seconds")
        if interval is None and quota.get("interval_ms") is not None:
            interval = float(quota["interval_ms"]) / 1000.0
        if max_requests is None or interval is None:
            raise ValueError(f"Quota for {provider} needs max_requests and interval_seconds")
        return TokenBucket(
            max_requests=float(max_requests),
            interval_seconds=float(interval),
            max_wait_seconds=quota.get("max_wait_seconds"),
            clock=self._clock,
        )

    def _bucket(self, provider: str) -> TokenBucket:
        # Caller holds self._lock
        bucket = self._buckets.get(provider)
        if bucket is None:
            bucket = self._build_bucket(provider, self._default_quota)
            self._buckets[provider] = bucket
            self._stats.setdefault(provider, RateLimitStats())
            logger.debug(f"Created default bucket for {provider}")
        return bucket

    def acquire(
        self,
        provider: str,
        tokens: float = 1.0,
        wait: bool = True,
        max_wait: Optional[float] = None,
    ) -> float:
        """
        Acquire tokens for an upstream call.

        Args:
            provider: Provider key ("coingecko", "binance", ...)
            tokens: Number of tokens to consume
            wait: If True, sleep until the token is available (bounded)
            max_wait: Override the bucket's bounded wait

        Returns:
            Seconds waited (0 if a token was available immediately)

        Raises:
            RateLimited: wait=False and no token is free, or the required
                wait exceeds the bound
        """
        with self._lock:
            bucket = self._bucket(provider)
            stats = self._stats[provider]
            wait_time = bucket.wait_time(tokens)

            if wait_time == 0.0:
                bucket.consume(tokens)
                stats.record_wait(0.0)
                return 0.0

            bound = bucket.max_wait if max_wait is None else max_wait
            if not wait or wait_time > bound:
                stats.rejected_requests += 1
                if self._metrics is not None:
                    self._metrics.record_rate_limit(provider, rejected=True)
                logger.warning(
                    f"Rate limit exceeded for {provider}: need {wait_time:.2f}s "
                    f"(bound {bound:.2f}s, wait={wait})"
                )
                raise RateLimited(provider, wait_time)

            bucket.reserve(tokens)
            stats.record_wait(wait_time)

        if self._metrics is not None:
            self._metrics.record_rate_limit(provider, wait_seconds=wait_time)
        if wait_time > 1.0:
            logger.warning(f"Rate limit throttle: {provider} waiting {wait_time:.2f}s")
        else:
            logger.debug(f"Rate limit pause: {provider} waiting {wait_time:.3f}s")

        # Sleep outside the lock so other providers are never blocked
        self._sleep(wait_time)
        return wait_time

    def check_available(self, provider: str, tokens: float = 1.0) -> float:
        """Seconds until tokens would be available, without consuming."""
        with self._lock:
            return self._bucket(provider).wait_time(tokens)

    def get_stats(self, provider: str) -> Dict[str, float]:
        with self._lock:
            bucket = self._bucket(provider)
            stats = self._stats[provider]
            return {
                "provider": provider,
                "total_requests": stats.total_requests,
                "throttled_requests": stats.throttled_requests,
                "rejected_requests": stats.rejected_requests,
                "throttled_pct": stats.throttled_pct(),
                "total_wait_time_ms": stats.total_wait_time_ms,
                "max_wait_time_ms": stats.max_wait_time_ms,
                "current_tokens": bucket.tokens,
                "capacity": bucket.capacity,
                "refill_rate": bucket.refill_rate,
                "max_wait_seconds": bucket.max_wait,
            }

    def providers(self):
        with self._lock:
            return sorted(self._buckets)

    def reset(self, provider: Optional[str] = None) -> None:
        """Refill buckets and clear statistics (for testing)"""
        with self._lock:
            names = [provider] if provider else list(self._buckets)
            for name in names:
                bucket = self._buckets.get(name)
                if bucket is None:
                    continue
                bucket.tokens = bucket.capacity
                bucket.last_refill = self._clock()
                self._stats[name] = RateLimitStats()
