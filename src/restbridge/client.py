"""
RequestExecutor - the single chokepoint for outgoing API calls.

Synchronous HTTP client with:
- Bearer token attached from the TokenManager on every attempt
- Per-domain rate limiting (token bucket + write-concurrency gate)
- Retry with exponential backoff for transient errors (429, 5xx, network)
- Connection pooling
- Request/response logging
- Structured results: callers get an ApiResponse or a StructuredError,
  never a raw transport exception
"""

import threading
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

import httpx
import structlog
from tenacity import RetryCallState, Retrying, stop_after_attempt

from restbridge.auth import TokenManager
from restbridge.domains import DomainProfile
from restbridge.errors import (
    LOCAL_REQUEST_ERRORS,
    ApiError,
    ErrorCode,
    InvalidRequestError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    RateLimitError,
    ServerError,
    StructuredError,
    TokenExpiredError,
)
from restbridge.models import ApiRequest, ApiResponse
from restbridge.rate_limiter import RateLimiter
from restbridge.retry import RetryConfig, RetryDecision, RetryPolicy, parse_retry_after

logger = structlog.get_logger(__name__)

USER_AGENT = "restbridge/1.0"

RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})
QUOTA_REASONS = frozenset({"quotaExceeded", "dailyLimitExceeded"})


# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------

def _error_details(response: httpx.Response) -> tuple[str, str | None]:
    """Extract (message, reason) from an error body, Google style if possible."""
    try:
        data = response.json()
    except ValueError:
        return (response.text[:200] or response.reason_phrase or "Unknown error"), None

    if not isinstance(data, dict):
        return response.reason_phrase or "Unknown error", None

    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message") or response.reason_phrase or "Unknown error"
        reason = None
        details = error.get("errors")
        if isinstance(details, list) and details and isinstance(details[0], dict):
            reason = details[0].get("reason")
        return message, reason or error.get("status")

    if isinstance(error, str):
        return data.get("error_description") or error, error

    return data.get("message") or response.reason_phrase or "Unknown error", None


def error_from_response(response: httpx.Response) -> ApiError:
    """Map a non-2xx response to the matching typed exception."""
    status = response.status_code
    message, reason = _error_details(response)
    kwargs: dict[str, Any] = {
        "status_code": status,
        "response_body": response.text[:500],
        "retry_after": parse_retry_after(response.headers.get("retry-after")),
        "reason": reason,
    }

    if status == 429:
        return RateLimitError(message, **kwargs)
    if status == 401:
        return TokenExpiredError(message, **kwargs)
    if status == 403:
        if reason in RATE_LIMIT_REASONS:
            return RateLimitError(message, **kwargs)
        if reason in QUOTA_REASONS:
            return QuotaExceededError(message, **kwargs)
        return PermissionDeniedError(message, **kwargs)
    if status == 404:
        return NotFoundError(message, **kwargs)
    if status == 408:
        return NetworkError(message, **kwargs)
    if status >= 500:
        return ServerError(message, **kwargs)
    return InvalidRequestError(message, **kwargs)


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" not in content_type and not response.text.lstrip().startswith(("{", "[")):
        return None
    try:
        return response.json()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class RequestExecutor:
    """
    Executes logical calls against one API domain.

    Per attempt: fetch the bearer token, acquire a rate-limit permit, send.
    Failures are classified by the RetryPolicy; retried attempts re-fetch the
    token and re-consume rate-limit tokens.

    Example:
        executor = RequestExecutor(profile, token_manager, rate_limiter)

        with executor:
            result = executor.execute(ApiRequest(method="GET", path="/users/me/labels"))
            if result.ok:
                print(result.body)
    """

    def __init__(
        self,
        profile: DomainProfile,
        token_manager: TokenManager,
        rate_limiter: RateLimiter,
        policy: RetryPolicy | None = None,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the executor.

        Args:
            profile: Domain profile (base URL, quota, retry preset)
            token_manager: Shared token manager
            rate_limiter: Shared per-domain rate limiter
            policy: Retry decision function
            retry_config: Overrides the profile's retry preset
            timeout: Per-attempt timeout in seconds
            http_client: Pre-built client, not closed by the executor
            transport: Custom httpx transport for the owned client (tests pass a MockTransport)
            sleep: Backoff sleep (injectable for tests)
        """
        self.profile = profile
        self.domain = profile.domain.value
        self.base_url = profile.base_url.rstrip("/")
        self.token_manager = token_manager
        self.rate_limiter = rate_limiter
        self.policy = policy or RetryPolicy()
        self.retry_config = retry_config or profile.retry
        self.timeout = timeout
        self._sleep = sleep

        self._client = http_client
        self._owns_client = http_client is None
        self._transport = transport
        self._client_lock = threading.Lock()

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0
        self._stats_lock = threading.Lock()

        self._log = logger.bind(domain=self.domain)

    def __enter__(self) -> "RequestExecutor":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        """Clean up HTTP client."""
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    timeout=self.timeout,
                    transport=self._transport,
                    limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                    headers={"User-Agent": USER_AGENT},
                )
            return self._client

    def build_url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.base_url}{path}"

    def _next_request_id(self) -> int:
        with self._stats_lock:
            self._request_count += 1
            return self._request_count

    def _count_error(self) -> None:
        with self._stats_lock:
            self._error_count += 1

    def request_cost(self, request: ApiRequest) -> int:
        """Quota units for a call: explicit cost, else the domain's default for the method."""
        if request.cost is not None:
            return request.cost
        return self.profile.default_cost(request.method, request.path)

    def _send(self, request: ApiRequest, url: str) -> ApiResponse:
        """One attempt: token, permit, HTTP exchange."""
        token = self.token_manager.get_access_token()
        headers = {**request.headers, "Authorization": f"Bearer {token}"}

        with self.rate_limiter.acquire(self.domain, self.request_cost(request), write=request.is_write):
            request_id = self._next_request_id()

            self._log.debug("API request", request_id=request_id, method=request.method, url=url)

            start_time = time.monotonic()
            response = self.client.request(
                request.method,
                url,
                params=request.params or None,
                json=request.body if request.content is None else None,
                content=request.content,
                headers=headers,
            )
            elapsed = time.monotonic() - start_time

        self._log.debug(
            "API response",
            request_id=request_id,
            status_code=response.status_code,
            elapsed_ms=round(elapsed * 1000),
        )

        if response.status_code >= 400:
            self._count_error()
            error = error_from_response(response)
            if isinstance(error, TokenExpiredError):
                # Never hand the rejected token out again, even if this call gives up
                self.token_manager.invalidate(token)
            raise error

        return ApiResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            text=response.text,
            body=_parse_body(response),
        )

    def execute(self, request: ApiRequest, url: str | None = None) -> ApiResponse | StructuredError:
        """
        Run one logical call with rate limiting, auth and retries.

        Returns:
            ApiResponse on success, StructuredError once retries give up
        """
        url = url or self.build_url(request.path)
        log = self._log.bind(method=request.method, path=request.path)
        context = self.retry_config.new_context()
        decisions: list[RetryDecision] = []
        attempts = 0

        def attempt() -> ApiResponse:
            nonlocal attempts
            attempts += 1
            return self._send(request, url)

        def should_retry(retry_state: RetryCallState) -> bool:
            if not retry_state.outcome.failed:
                return False
            token_refreshed = any(
                d.retry and d.error_code is ErrorCode.TOKEN_EXPIRED for d in decisions
            )
            decision = self.policy.should_retry(
                retry_state.outcome.exception(),
                replace(
                    context,
                    attempt=retry_state.attempt_number - 1,
                    token_refreshed=token_refreshed,
                ),
            )
            decisions.append(decision)
            return decision.retry

        def wait(retry_state: RetryCallState) -> float:
            return decisions[-1].delay or 0.0

        def before_sleep(retry_state: RetryCallState) -> None:
            log.info(
                "Retrying after transient error",
                attempt=retry_state.attempt_number,
                max_attempts=context.max_attempts,
                delay_seconds=round(decisions[-1].delay or 0.0, 3),
                error_code=decisions[-1].error_code.value,
                error=str(retry_state.outcome.exception()),
            )

        retrying = Retrying(
            retry=should_retry,
            wait=wait,
            stop=stop_after_attempt(context.max_attempts),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

        try:
            response = retrying(attempt)
        except (ApiError, httpx.HTTPError, *LOCAL_REQUEST_ERRORS) as e:
            error = StructuredError.from_exception(e, self.domain)
            log.warning(
                "API call failed",
                error_code=error.error_code.value,
                attempts=attempts,
                error=error.message,
            )
            return error

        response.attempts = attempts
        return response

    # -------------------------------------------------------------------------
    # Convenience wrappers
    # -------------------------------------------------------------------------

    def get(self, path: str, params: dict[str, Any] | None = None, cost: int | None = None) -> ApiResponse | StructuredError:
        return self.execute(ApiRequest(method="GET", path=path, params=params or {}, cost=cost))

    def post(self, path: str, body: Any = None, cost: int | None = None) -> ApiResponse | StructuredError:
        return self.execute(ApiRequest(method="POST", path=path, body=body, cost=cost))

    def put(self, path: str, body: Any = None, cost: int | None = None) -> ApiResponse | StructuredError:
        return self.execute(ApiRequest(method="PUT", path=path, body=body, cost=cost))

    def patch(self, path: str, body: Any = None, cost: int | None = None) -> ApiResponse | StructuredError:
        return self.execute(ApiRequest(method="PATCH", path=path, body=body, cost=cost))

    def delete(self, path: str, cost: int | None = None) -> ApiResponse | StructuredError:
        return self.execute(ApiRequest(method="DELETE", path=path, cost=cost))

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "domain": self.domain,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "rate_limiter": self.rate_limiter.for_domain(self.domain).get_stats(),
        }

    def health_check(self, path: str = "/") -> dict[str, Any]:
        """Verify API connectivity and credentials with a cheap GET."""
        result = self.get(path)
        if result.ok:
            return {"status": "healthy", "domain": self.domain, "attempts": result.attempts}
        if result.error_code in (ErrorCode.AUTHENTICATION_FAILED, ErrorCode.TOKEN_EXPIRED):
            return {"status": "auth_error", "domain": self.domain, "message": result.message}
        return {"status": "error", "domain": self.domain, "message": result.message}


# The command layer refers to the executor as the API client.
ApiClient = RequestExecutor
