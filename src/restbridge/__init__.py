"""
restbridge - Resilient REST API client

A scriptable command-line client that turns heterogeneous REST APIs into a
uniform request surface for automated callers.

Features:
- Per-domain token bucket rate limiting with write-concurrency caps
- Retry with exponential backoff and jitter, honoring Retry-After
- OAuth token management with single-flight refresh
- Multipart batch requests (up to 100 calls per exchange)
- Lazy pagination streams
- Structured, machine-readable errors

Quick Start:
    pip install restbridge
    restbridge auth login --credential-file token.json
    restbridge request gmail GET /users/me/labels
"""

__version__ = "1.0.0"

from restbridge.auth import AuthState, OAuthRefresher, TokenManager
from restbridge.batch import BatchClient
from restbridge.client import ApiClient, RequestExecutor
from restbridge.domains import Domain, DomainProfile
from restbridge.errors import (
    ApiError,
    AuthenticationFailedError,
    ErrorCode,
    PaginationError,
    RateLimitError,
    StructuredError,
)
from restbridge.models import (
    ApiRequest,
    ApiResponse,
    BatchRequest,
    BatchResult,
    Credential,
    PaginatedResult,
)
from restbridge.pagination import PaginationStream
from restbridge.rate_limiter import RateLimiter, TokenBucketRateLimiter
from restbridge.registry import ClientRegistry, build_clients
from restbridge.retry import RetryConfig, RetryPolicy
from restbridge.token_store import FileTokenStore, MemoryTokenStore, TokenStore

__all__ = [
    # Clients
    "RequestExecutor",
    "ApiClient",
    "BatchClient",
    "PaginationStream",
    "ClientRegistry",
    "build_clients",

    # Domains
    "Domain",
    "DomainProfile",

    # Resilience
    "RateLimiter",
    "TokenBucketRateLimiter",
    "RetryConfig",
    "RetryPolicy",

    # Auth
    "TokenManager",
    "OAuthRefresher",
    "AuthState",
    "TokenStore",
    "MemoryTokenStore",
    "FileTokenStore",

    # Models
    "ApiRequest",
    "ApiResponse",
    "BatchRequest",
    "BatchResult",
    "Credential",
    "PaginatedResult",

    # Errors
    "ApiError",
    "AuthenticationFailedError",
    "RateLimitError",
    "PaginationError",
    "ErrorCode",
    "StructuredError",
]
