"""
Pydantic models for requests, responses, credentials and batch payloads.

These are the types that flow between the command handlers and the
client layer. Wire-facing models (BatchRequest, BatchResult, ...) dump
to exactly the JSON shape the CLI prints.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class ApiRequest(BaseModel):
    """A single logical call against one API domain."""

    method: str = "GET"
    path: str
    params: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    content: bytes | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    cost: int | None = None  # None = the domain's default cost for the method
    write: bool | None = None  # None = infer from method

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("cost")
    @classmethod
    def positive_cost(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError("cost must be at least 1")
        return v

    @property
    def is_write(self) -> bool:
        """Mutating calls hold a write-concurrency slot."""
        if self.write is not None:
            return self.write
        return self.method not in READ_METHODS


class ApiResponse(BaseModel):
    """Successful HTTP exchange as seen by command handlers."""

    status_code: int
    headers: dict[str, str] = Field(default_factory=dict)
    text: str = ""
    body: Any = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return True

    def header(self, name: str, default: str | None = None) -> str | None:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return default


class Credential(BaseModel):
    """OAuth credential owned by the token manager."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None  # None = does not expire
    scopes: set[str] = Field(default_factory=set)
    token_type: str = "Bearer"

    @field_validator("expires_at")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        now: datetime,
        previous: "Credential | None" = None,
    ) -> "Credential":
        """Build a credential from an OAuth token endpoint response."""
        expires_in = data.get("expires_in")
        scope = data.get("scope")
        if scope:
            scopes = set(scope.split())
        elif previous is not None:
            scopes = set(previous.scopes)
        else:
            scopes = set()

        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=now + timedelta(seconds=int(expires_in)) if expires_in is not None else None,
            scopes=scopes,
            token_type=data.get("token_type", "Bearer"),
        )

    def expires_within(self, margin: timedelta, now: datetime) -> bool:
        """True when the token is expired or will be within `margin`."""
        if self.expires_at is None:
            return False
        return self.expires_at - margin <= now

    @property
    def can_refresh(self) -> bool:
        return bool(self.refresh_token)


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

class BatchRequest(BaseModel):
    """One sub-request of a batch: {id, method, path, body?}."""

    id: str
    method: str = "GET"
    path: str
    body: Any = None

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("id")
    @classmethod
    def non_empty_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("id must not be empty")
        return v

    @classmethod
    def get(cls, id: str, path: str) -> "BatchRequest":
        return cls(id=id, method="GET", path=path)

    @classmethod
    def post(cls, id: str, path: str, body: Any) -> "BatchRequest":
        return cls(id=id, method="POST", path=path, body=body)

    @classmethod
    def patch(cls, id: str, path: str, body: Any) -> "BatchRequest":
        return cls(id=id, method="PATCH", path=path, body=body)

    @classmethod
    def delete(cls, id: str, path: str) -> "BatchRequest":
        return cls(id=id, method="DELETE", path=path)


class BatchResponse(BaseModel):
    """Successful (2xx) sub-response."""

    id: str
    status: int
    body: Any = None


class BatchError(BaseModel):
    """Failed sub-response."""

    id: str
    status: int
    message: str


class BatchResult(BaseModel):
    """Aggregate outcome of a batch call."""

    status: Literal["success", "partial", "error"]
    results: list[BatchResponse] = Field(default_factory=list)
    errors: list[BatchError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return True

    @classmethod
    def from_outcomes(
        cls,
        results: list[BatchResponse],
        errors: list[BatchError],
    ) -> "BatchResult":
        if not errors:
            status = "success"
        elif results:
            status = "partial"
        else:
            status = "error"
        return cls(status=status, results=results, errors=errors)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

class PaginatedResult(BaseModel):
    """Collected pages with continuation metadata."""

    items: list[Any] = Field(default_factory=list)
    next_page_token: str | None = None
    next_sync_token: str | None = None
    total_fetched: int = 0

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
