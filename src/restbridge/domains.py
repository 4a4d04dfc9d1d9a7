"""
Closed set of API domain profiles.

Each domain carries its base URL, batch endpoint, published quota and
write-concurrency cap. Profiles are plain data; clients for all domains
are built once at startup by restbridge.registry.build_clients.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from restbridge.retry import RetryConfig


class Domain(str, Enum):
    GMAIL = "gmail"
    DRIVE = "drive"
    CALENDAR = "calendar"
    DOCS = "docs"
    SHEETS = "sheets"
    SLIDES = "slides"
    TASKS = "tasks"
    CHAT = "chat"
    CONTACTS = "contacts"
    GROUPS = "groups"
    ADMIN = "admin"


@dataclass(frozen=True)
class DomainProfile:
    """Connection and quota parameters for one domain."""
    domain: Domain
    base_url: str
    capacity: int
    refill_rate: float
    write_concurrency: int | None = None
    batch_url: str | None = None
    page_size_param: str = "pageSize"
    retry: RetryConfig = field(default_factory=RetryConfig.default)
    # Quota units per operation ("list", "get", "send", ...); missing means 1
    costs: Mapping[str, int] = field(default_factory=dict, hash=False)

    def default_cost(self, method: str, path: str = "") -> int:
        """Quota units for a call that did not set an explicit cost."""
        if not self.costs:
            return 1
        method = method.upper()
        tail = path.rstrip("/").rsplit("/", 1)[-1]
        if method in ("GET", "HEAD"):
            operation = "get"
        elif method == "DELETE":
            operation = "delete"
        elif tail == "send":
            operation = "send"
        elif tail == "batchModify":
            operation = "batch_modify"
        else:
            operation = "modify"
        return self.costs.get(operation, 1)

    @property
    def list_cost(self) -> int:
        """Quota units per page of a paginated listing."""
        return self.costs.get("list", 1)

    def with_overrides(self, overrides: dict[str, Any]) -> "DomainProfile":
        """Apply non-empty config overrides (capacity, refill_rate, ...)."""
        allowed = {"base_url", "capacity", "refill_rate", "write_concurrency", "batch_url"}
        changes = {k: v for k, v in overrides.items() if k in allowed and v is not None}
        return replace(self, **changes) if changes else self

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain.value,
            "base_url": self.base_url,
            "batch_url": self.batch_url,
            "capacity": self.capacity,
            "refill_rate": self.refill_rate,
            "write_concurrency": self.write_concurrency,
            "max_attempts": self.retry.max_attempts,
            "costs": dict(self.costs),
        }


# Quota costs for Gmail operations (quota units)
GMAIL_COSTS = {
    "list": 5,
    "get": 5,
    "send": 100,
    "modify": 5,
    "delete": 10,
    "batch_modify": 50,
}


DEFAULT_PROFILES: dict[Domain, DomainProfile] = {
    Domain.GMAIL: DomainProfile(
        Domain.GMAIL,
        base_url="https://gmail.googleapis.com/gmail/v1",
        batch_url="https://gmail.googleapis.com/batch/gmail/v1",
        page_size_param="maxResults",
        capacity=250,
        refill_rate=250.0,
        retry=RetryConfig.conservative(),
        costs=GMAIL_COSTS,
    ),
    Domain.DRIVE: DomainProfile(
        Domain.DRIVE,
        base_url="https://www.googleapis.com/drive/v3",
        batch_url="https://www.googleapis.com/batch/drive/v3",
        capacity=200,
        refill_rate=200.0,
        write_concurrency=3,
        retry=RetryConfig.conservative(),
    ),
    Domain.CALENDAR: DomainProfile(
        Domain.CALENDAR,
        base_url="https://www.googleapis.com/calendar/v3",
        batch_url="https://www.googleapis.com/batch/calendar/v3",
        page_size_param="maxResults",
        capacity=5,
        refill_rate=5.0,
    ),
    Domain.DOCS: DomainProfile(
        Domain.DOCS,
        base_url="https://docs.googleapis.com/v1",
        capacity=1,
        refill_rate=1.0,
        retry=RetryConfig.aggressive(),
    ),
    Domain.SHEETS: DomainProfile(
        Domain.SHEETS,
        base_url="https://sheets.googleapis.com/v4",
        capacity=1,
        refill_rate=1.0,
        retry=RetryConfig.aggressive(),
    ),
    Domain.SLIDES: DomainProfile(
        Domain.SLIDES,
        base_url="https://slides.googleapis.com/v1",
        capacity=1,
        refill_rate=1.0,
        retry=RetryConfig.aggressive(),
    ),
    # 50000/day is roughly 0.58/s; stay under it
    Domain.TASKS: DomainProfile(
        Domain.TASKS,
        base_url="https://tasks.googleapis.com/tasks/v1",
        page_size_param="maxResults",
        capacity=10,
        refill_rate=0.5,
    ),
    Domain.CHAT: DomainProfile(
        Domain.CHAT,
        base_url="https://chat.googleapis.com/v1",
        batch_url="https://chat.googleapis.com/batch",
        capacity=10,
        refill_rate=0.5,
    ),
    Domain.CONTACTS: DomainProfile(
        Domain.CONTACTS,
        base_url="https://people.googleapis.com/v1",
        capacity=10,
        refill_rate=0.5,
    ),
    Domain.GROUPS: DomainProfile(
        Domain.GROUPS,
        base_url="https://cloudidentity.googleapis.com/v1",
        capacity=10,
        refill_rate=0.5,
    ),
    Domain.ADMIN: DomainProfile(
        Domain.ADMIN,
        base_url="https://admin.googleapis.com/admin/directory/v1",
        page_size_param="maxResults",
        capacity=10,
        refill_rate=0.5,
    ),
}


def resolve_profiles(
    overrides: dict[str, dict[str, Any]] | None = None,
    retry_override: RetryConfig | None = None,
) -> dict[Domain, DomainProfile]:
    """Default profiles with per-domain overrides from configuration."""
    overrides = overrides or {}
    unknown = set(overrides) - {d.value for d in Domain}
    if unknown:
        raise ValueError(f"Unknown domain(s) in configuration: {', '.join(sorted(unknown))}")

    profiles = {}
    for domain, profile in DEFAULT_PROFILES.items():
        profile = profile.with_overrides(overrides.get(domain.value, {}))
        if retry_override is not None:
            profile = replace(profile, retry=retry_override)
        profiles[domain] = profile
    return profiles
