"""
One RequestExecutor per domain, built once at startup.

All executors share the TokenManager and the RateLimiter; each owns its
own httpx connection pool.
"""

import time
from collections.abc import Callable
from typing import Any

import httpx
import structlog

from restbridge.auth import TokenManager
from restbridge.batch import BatchClient
from restbridge.client import RequestExecutor
from restbridge.domains import Domain, DomainProfile, resolve_profiles
from restbridge.pagination import PaginationStream
from restbridge.rate_limiter import RateLimiter
from restbridge.retry import RetryPolicy

logger = structlog.get_logger(__name__)


def _coerce_domain(domain: Domain | str) -> Domain:
    try:
        return Domain(domain)
    except ValueError:
        valid = ", ".join(d.value for d in Domain)
        raise ValueError(f"Unknown domain '{domain}'. Valid domains: {valid}") from None


class ClientRegistry:
    """
    Lookup of executors by domain, plus batch/pagination front ends.

    Example:
        with build_clients(token_manager) as registry:
            result = registry.client("gmail").get("/users/me/labels")
    """

    def __init__(
        self,
        executors: dict[Domain, RequestExecutor],
        rate_limiter: RateLimiter,
        token_manager: TokenManager,
    ):
        self._executors = executors
        self.rate_limiter = rate_limiter
        self.token_manager = token_manager

    def __enter__(self) -> "ClientRegistry":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def client(self, domain: Domain | str) -> RequestExecutor:
        return self._executors[_coerce_domain(domain)]

    def batch(self, domain: Domain | str) -> BatchClient:
        return BatchClient(self.client(domain))

    def paginate(self, domain: Domain | str, path: str, **kwargs: Any) -> PaginationStream:
        return PaginationStream(self.client(domain), path, **kwargs)

    def profiles(self) -> list[DomainProfile]:
        return [executor.profile for executor in self._executors.values()]

    def get_stats(self) -> dict[str, Any]:
        return {domain.value: executor.get_stats() for domain, executor in self._executors.items()}

    def close(self) -> None:
        for executor in self._executors.values():
            executor.close()


def build_clients(
    token_manager: TokenManager,
    profiles: dict[Domain, DomainProfile] | None = None,
    timeout: float = 30.0,
    policy: RetryPolicy | None = None,
    transport: httpx.BaseTransport | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> ClientRegistry:
    """
    Construct the executors for every domain profile.

    Args:
        token_manager: Shared token manager
        profiles: Domain profiles (defaults to the built-in set)
        timeout: Per-attempt HTTP timeout in seconds
        policy: Retry policy shared by all executors
        transport: Custom httpx transport (tests pass an httpx.MockTransport)
        clock: Monotonic clock for the rate limiter
        sleep: Sleep used by the rate limiter and retry backoff
    """
    profiles = profiles or resolve_profiles()
    policy = policy or RetryPolicy()
    rate_limiter = RateLimiter.from_profiles(profiles, clock=clock, sleep=sleep)

    executors = {}
    for domain, profile in profiles.items():
        executors[domain] = RequestExecutor(
            profile,
            token_manager,
            rate_limiter,
            policy=policy,
            timeout=timeout,
            transport=transport,
            sleep=sleep,
        )

    logger.debug("Built domain clients", domains=[d.value for d in executors])
    return ClientRegistry(executors, rate_limiter, token_manager)
