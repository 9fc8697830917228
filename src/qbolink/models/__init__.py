"""Data models for tokens and fetch runs."""

from qbolink.models.fetch import (
    AggregateResult,
    EndpointOutcome,
    FetchProgress,
    FetchRequest,
    RunStatus,
)
from qbolink.models.token import TokenGrant, TokenRecord, TokenState

__all__ = [
    "AggregateResult",
    "EndpointOutcome",
    "FetchProgress",
    "FetchRequest",
    "RunStatus",
    "TokenGrant",
    "TokenRecord",
    "TokenState",
]
