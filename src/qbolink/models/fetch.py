"""
Fetch models — report requests and the aggregated outcome of a run.

These are scoped to a single orchestrated run and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from qbolink.errors import Classification


class RunStatus(str, Enum):
    """Terminal state of an orchestrated fetch run."""

    COMPLETE = "complete"  # Every request succeeded
    PARTIAL = "partial"  # Some endpoints failed; the rest are usable
    REAUTH_REQUIRED = "reauth_required"  # Credential invalidated; nothing is final


@dataclass
class FetchRequest:
    """One report/query call against the accounting API.

    ``name`` identifies the request in the result and defaults to the
    endpoint. Higher ``priority`` requests are dispatched first, which only
    matters for latency when the rate limiter is saturated.
    """

    endpoint: str
    params: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    name: str = ""
    method: str = "GET"
    data: Any = None

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.endpoint


@dataclass
class EndpointOutcome:
    """Result of one request: either a payload or a classified error."""

    name: str
    endpoint: str
    success: bool
    payload: Any = None
    error: Classification | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "success": self.success,
            "payload": self.payload,
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
        }


@dataclass
class AggregateResult:
    """Everything a run produced, with partial-failure accounting."""

    owner_id: str
    status: RunStatus
    outcomes: dict[str, EndpointOutcome] = field(default_factory=dict)
    requested: int = 0
    reason: str = ""

    @property
    def successes(self) -> dict[str, EndpointOutcome]:
        return {name: o for name, o in self.outcomes.items() if o.success}

    @property
    def failures(self) -> dict[str, EndpointOutcome]:
        return {name: o for name, o in self.outcomes.items() if not o.success}

    @property
    def failed_endpoints(self) -> list[str]:
        return sorted(self.failures)

    @property
    def completeness(self) -> float:
        """Fraction of requested endpoints that succeeded."""
        if self.requested == 0:
            return 1.0 if self.status is RunStatus.COMPLETE else 0.0
        return len(self.successes) / self.requested

    @property
    def payloads(self) -> dict[str, Any]:
        return {name: o.payload for name, o in self.successes.items()}

    @property
    def reauth_required(self) -> bool:
        return self.status is RunStatus.REAUTH_REQUIRED

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "status": self.status.value,
            "completeness": self.completeness,
            "requested": self.requested,
            "reason": self.reason,
            "failed_endpoints": self.failed_endpoints,
            "outcomes": {name: o.to_dict() for name, o in self.outcomes.items()},
        }


@dataclass(frozen=True)
class FetchProgress:
    """Snapshot passed to progress callbacks after each request settles."""

    completed: int
    total: int
    current: str
    error: str | None = None

    @property
    def percentage(self) -> float:
        return (self.completed / self.total) * 100 if self.total else 100.0
