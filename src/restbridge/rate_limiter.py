"""
Per-domain rate limiting: token bucket plus write-concurrency gate.

Handles concurrent requests properly, unlike the naive time-based approach.
Every call made by the client layer passes through RateLimiter.acquire,
which is the single enforcement point for quota compliance.
"""

import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass

import structlog

from restbridge.errors import InvalidRequestError

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], None]

# Absorbs float drift in refill arithmetic
TOKEN_EPSILON = 1e-9


@dataclass
class RateLimiterStats:
    """Statistics for monitoring rate limiter behavior."""
    requests_made: int = 0
    requests_throttled: int = 0
    total_wait_time: float = 0.0
    last_request_time: float = 0.0


class TokenBucketRateLimiter:
    """
    Thread-safe token bucket rate limiter.

    How it works:
    - Bucket holds up to `capacity` tokens
    - Tokens are added at `rate` tokens per second
    - Each request consumes `cost` tokens
    - If not enough tokens are available, sleep until they are

    The lock only covers the arithmetic; sleeping happens outside it.

    Example:
        limiter = TokenBucketRateLimiter(capacity=250, rate=250.0)
        limiter.acquire(cost=5)  # Blocks until 5 tokens are available
    """

    def __init__(
        self,
        capacity: int,
        rate: float,
        clock: Clock = time.monotonic,
        sleep: Sleep = time.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            capacity: Max tokens (burst size)
            rate: Tokens refilled per second
            clock: Monotonic time source (injectable for tests)
            sleep: Blocking sleep (injectable for tests)
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if rate <= 0:
            raise ValueError("rate must be positive")

        self.capacity = capacity
        self.rate = float(rate)
        self._clock = clock
        self._sleep = sleep

        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = threading.Lock()

        self.stats = RateLimiterStats()

    def _refill(self) -> None:
        """Add tokens based on elapsed time. Must hold lock."""
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
            self._last_refill = now

    def acquire(self, cost: int = 1) -> float:
        """
        Acquire `cost` tokens, blocking as long as necessary.

        Returns:
            Total seconds spent waiting
        """
        if cost > self.capacity:
            raise InvalidRequestError(
                f"Operation cost ({cost}) exceeds bucket capacity ({self.capacity})"
            )

        waited = 0.0
        while True:
            with self._lock:
                self._refill()

                if self._tokens + TOKEN_EPSILON >= cost:
                    self._tokens = max(0.0, self._tokens - cost)
                    self.stats.requests_made += 1
                    self.stats.last_request_time = time.time()
                    return waited

                wait_time = (cost - self._tokens) / self.rate

            self.stats.requests_throttled += 1
            self.stats.total_wait_time += wait_time
            waited += wait_time
            logger.debug("Rate limited, waiting", wait_seconds=round(wait_time, 4), cost=cost)
            self._sleep(wait_time)

    @property
    def available_tokens(self) -> float:
        """Current number of available tokens."""
        with self._lock:
            self._refill()
            return self._tokens

    def get_stats(self) -> dict:
        """Get rate limiter statistics for monitoring."""
        return {
            "requests_made": self.stats.requests_made,
            "requests_throttled": self.stats.requests_throttled,
            "total_wait_time_seconds": round(self.stats.total_wait_time, 2),
            "available_tokens": round(self.available_tokens, 1),
            "capacity": self.capacity,
            "rate_per_second": round(self.rate, 2),
        }


class WriteConcurrencyGate:
    """Counting semaphore bounding simultaneous in-flight mutating calls."""

    def __init__(self, limit: int):
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = limit
        self._semaphore = threading.BoundedSemaphore(limit)
        self._in_flight = 0
        self._lock = threading.Lock()

    def acquire(self) -> None:
        self._semaphore.acquire()
        with self._lock:
            self._in_flight += 1

    def release(self) -> None:
        with self._lock:
            self._in_flight -= 1
        self._semaphore.release()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight


class DomainRateLimiter:
    """Token bucket plus optional write gate for one API domain."""

    def __init__(
        self,
        domain: str,
        bucket: TokenBucketRateLimiter,
        write_gate: WriteConcurrencyGate | None = None,
    ):
        self.domain = domain
        self.bucket = bucket
        self.write_gate = write_gate

    @contextmanager
    def acquire(self, cost: int = 1, write: bool = False) -> Iterator[None]:
        """
        Hold a rate-limit permit for the duration of the `with` block.

        Tokens are deducted up front and never refunded. A write call also
        holds a write slot, released when the block exits for any reason.
        """
        self.bucket.acquire(cost)

        if not (write and self.write_gate is not None):
            yield
            return

        self.write_gate.acquire()
        try:
            yield
        finally:
            self.write_gate.release()

    def get_stats(self) -> dict:
        stats = self.bucket.get_stats()
        if self.write_gate is not None:
            stats["write_concurrency"] = self.write_gate.limit
            stats["writes_in_flight"] = self.write_gate.in_flight
        return stats


class RateLimiter:
    """
    Registry of per-domain limiters: `acquire(domain, cost)`.

    Example:
        limiter = RateLimiter.from_profiles(profiles)

        with limiter.acquire("gmail", cost=5):
            send()
    """

    def __init__(self, limiters: Mapping[str, DomainRateLimiter]):
        self._limiters = dict(limiters)

    @classmethod
    def from_profiles(
        cls,
        profiles: Mapping,
        clock: Clock = time.monotonic,
        sleep: Sleep = time.sleep,
    ) -> "RateLimiter":
        """Build one limiter per DomainProfile."""
        limiters = {}
        for key, profile in profiles.items():
            name = getattr(key, "value", key)
            bucket = TokenBucketRateLimiter(
                capacity=profile.capacity,
                rate=profile.refill_rate,
                clock=clock,
                sleep=sleep,
            )
            gate = (
                WriteConcurrencyGate(profile.write_concurrency)
                if profile.write_concurrency
                else None
            )
            limiters[name] = DomainRateLimiter(name, bucket, gate)
        return cls(limiters)

    def for_domain(self, domain: str) -> DomainRateLimiter:
        return self._limiters[getattr(domain, "value", domain)]

    def acquire(self, domain: str, cost: int = 1, write: bool = False):
        """Context manager holding a permit for `domain`."""
        return self.for_domain(domain).acquire(cost, write=write)

    def domains(self) -> list[str]:
        return list(self._limiters)

    def get_stats(self) -> dict:
        return {name: limiter.get_stats() for name, limiter in self._limiters.items()}
