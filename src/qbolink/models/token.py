"""
Token models — persisted credential records and provider grants.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class TokenState(str, Enum):
    """Lifecycle state of an owner's credential."""

    NO_TOKEN = "no_token"
    VALID = "valid"
    NEAR_EXPIRY = "near_expiry"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    INVALID = "invalid"


@dataclass(frozen=True)
class TokenGrant:
    """Parsed response from the OAuth2 token endpoint."""

    access_token: str
    refresh_token: str
    expires_in: int = 3600
    token_type: str = "Bearer"
    refresh_expires_in: int | None = None
    scope: str = ""

    @classmethod
    def from_oauth_response(cls, data: dict[str, Any], *, previous_refresh_token: str = "") -> TokenGrant:
        """Parse a standard OAuth2 token response.

        QuickBooks rotates refresh tokens; if the response omits one, the
        previous refresh token stays in force.
        """
        refresh_expires = data.get("x_refresh_token_expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_in=int(data.get("expires_in", 3600)),
            token_type=data.get("token_type", "Bearer"),
            refresh_expires_in=int(refresh_expires) if refresh_expires is not None else None,
            scope=data.get("scope", ""),
        )


@dataclass(frozen=True)
class TokenRecord:
    """One stored credential for an (owner, realm) pair.

    Records are immutable. A refresh produces a new record that replaces the
    old one through the token store; nothing mutates a record in place.
    """

    owner_id: str
    realm_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_type: str = "Bearer"
    is_active: bool = True
    refresh_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def from_grant(cls, owner_id: str, realm_id: str, grant: TokenGrant, now: datetime) -> TokenRecord:
        refresh_expires_at = None
        if grant.refresh_expires_in is not None:
            refresh_expires_at = now + timedelta(seconds=grant.refresh_expires_in)
        return cls(
            owner_id=owner_id,
            realm_id=realm_id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=now + timedelta(seconds=grant.expires_in),
            token_type=grant.token_type,
            refresh_expires_at=refresh_expires_at,
            created_at=now,
            updated_at=now,
        )

    def seconds_until_expiry(self, now: datetime) -> float:
        return (self.expires_at - now).total_seconds()

    def deactivated(self, now: datetime) -> TokenRecord:
        return replace(self, is_active=False, updated_at=now)

    @property
    def auth_header(self) -> dict[str, str]:
        return {"Authorization": f"{self.token_type} {self.access_token}"}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "realm_id": self.realm_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "token_type": self.token_type,
            "is_active": self.is_active,
            "refresh_expires_at": _iso(self.refresh_expires_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenRecord:
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            owner_id=data["owner_id"],
            realm_id=data.get("realm_id", ""),
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            token_type=data.get("token_type", "Bearer"),
            is_active=bool(data.get("is_active", True)),
            refresh_expires_at=_parse_iso(data.get("refresh_expires_at")),
            created_at=_parse_iso(data.get("created_at")),
            updated_at=_parse_iso(data.get("updated_at")),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
