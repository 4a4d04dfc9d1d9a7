"""
Retry policy: failure classification and exponential backoff with jitter.

The policy is a pure decision function. The caller owns the attempt
counter and the sleeping; RequestExecutor plugs the policy into a
tenacity Retrying loop.
"""

import random
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from restbridge.errors import (
    LOCAL_REQUEST_ERRORS,
    ApiError,
    ErrorCode,
    QuotaExceededError,
    RateLimitError,
    ServerError,
    TokenExpiredError,
)

HARD_QUOTA_REASONS = frozenset({"dailyLimitExceeded"})


@dataclass(frozen=True)
class RetryContext:
    """Per-call retry state. `attempt` is the 0-based attempt that just failed."""
    attempt: int = 0
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter_fraction: float = 0.5
    retry_after_hint: float | None = None
    token_refreshed: bool = False

    def next(self) -> "RetryContext":
        return replace(self, attempt=self.attempt + 1, retry_after_hint=None)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of RetryPolicy.should_retry."""
    retry: bool
    delay: float | None
    error_code: ErrorCode
    retry_after_seconds: float | None = None


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters for one domain."""
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter_fraction: float = 0.5

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if not 0.0 <= self.jitter_fraction <= 1.0:
            raise ValueError("jitter_fraction must be within [0, 1]")

    @classmethod
    def default(cls) -> "RetryConfig":
        return cls()

    @classmethod
    def aggressive(cls) -> "RetryConfig":
        """For tightly rate-limited APIs (Docs, Sheets, Slides)."""
        return cls(max_attempts=6, base_delay=1.0, max_delay=60.0)

    @classmethod
    def conservative(cls) -> "RetryConfig":
        """For high-volume APIs (Gmail, Drive)."""
        return cls(max_attempts=4, base_delay=0.2, max_delay=10.0)

    def new_context(self) -> RetryContext:
        return RetryContext(
            attempt=0,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter_fraction=self.jitter_fraction,
        )


class RetryPolicy:
    """
    Decide whether a failed attempt should be retried, and after how long.

    Retryable: rate limits, soft quota, 5xx, transport failures, 408, and a
    single 401 per call (to re-fetch the token), whichever attempt it
    arrives on. Everything else gives up at once.

    Example:
        policy = RetryPolicy()
        context = RetryConfig.default().new_context()
        decision = policy.should_retry(error, context)
        if decision.retry:
            sleep(decision.delay)
            context = context.next()
    """

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def classify(self, error: BaseException) -> tuple[ErrorCode, bool]:
        """Map an error to its code and whether it is transient."""
        if isinstance(error, httpx.TransportError):
            return ErrorCode.NETWORK_ERROR, True
        if isinstance(error, QuotaExceededError):
            return ErrorCode.QUOTA_EXCEEDED, error.reason not in HARD_QUOTA_REASONS
        if isinstance(error, (RateLimitError, ServerError, TokenExpiredError)):
            return error.error_code, True
        if isinstance(error, ApiError):
            return error.error_code, error.error_code is ErrorCode.NETWORK_ERROR
        if isinstance(error, httpx.HTTPError):
            return ErrorCode.NETWORK_ERROR, False
        if isinstance(error, LOCAL_REQUEST_ERRORS):
            return ErrorCode.INVALID_REQUEST, False
        return ErrorCode.SERVER_ERROR, False

    def base_backoff(self, context: RetryContext) -> float:
        """Backoff before jitter: min(max_delay, base_delay * 2**attempt)."""
        return min(context.max_delay, context.base_delay * (2 ** context.attempt))

    def backoff(self, context: RetryContext) -> float:
        delay = self.base_backoff(context)
        if context.jitter_fraction:
            low = 1.0 - context.jitter_fraction
            high = 1.0 + context.jitter_fraction
            delay *= self._rng.uniform(low, high)
        return delay

    def should_retry(self, error: BaseException, context: RetryContext) -> RetryDecision:
        code, retryable = self.classify(error)

        hint = context.retry_after_hint
        if hint is None:
            hint = getattr(error, "retry_after", None)

        if code is ErrorCode.TOKEN_EXPIRED:
            # One re-attempt per call with a freshly fetched token
            retryable = not context.token_refreshed
            hint = 0.0 if hint is None else hint

        if not retryable or context.attempt + 1 >= context.max_attempts:
            return RetryDecision(False, None, code, hint)

        delay = hint if hint is not None else self.backoff(context)
        return RetryDecision(True, delay, code, hint)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header: delta-seconds or an HTTP-date."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())
