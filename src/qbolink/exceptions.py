"""
qbolink exception hierarchy.

Every error raised by the library derives from :class:`QBOLinkError`.
Provider failures keep the raw response body around so the
:class:`~qbolink.errors.ErrorClassifier` can dig the authoritative
error code out of it later.
"""

from __future__ import annotations

from typing import Any


class QBOLinkError(Exception):
    """Base class for all qbolink errors."""


class ConfigurationError(QBOLinkError):
    """Raised when required configuration is missing or inconsistent."""


class TokenNotFoundError(QBOLinkError):
    """Raised when no active token exists for an owner."""

    def __init__(self, owner: str) -> None:
        super().__init__(f"No active QuickBooks token for owner {owner!r}")
        self.owner = owner


class ReauthRequiredError(QBOLinkError):
    """The stored credential is gone or unusable; the user must reconnect.

    ``cause`` is the classification of the refresh failure behind this, if
    any. A client configuration issue keeps the stored token, so callers
    must not clear it on that cause.
    """

    def __init__(self, owner: str, reason: str = "", *, cause: Any = None) -> None:
        message = f"Re-authentication required for owner {owner!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.owner = owner
        self.reason = reason
        self.cause = cause


class ProviderHTTPError(QBOLinkError):
    """Non-2xx response from the token endpoint, the QBO API, or a proxy."""

    def __init__(
        self,
        status_code: int,
        body: Any = None,
        *,
        url: str = "",
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(f"HTTP {status_code} from {url or 'provider'}")
        self.status_code = status_code
        self.body = body
        self.url = url
        self.headers = headers or {}


class ProviderFaultError(QBOLinkError):
    """A successful HTTP response whose body carries a QBO ``Fault``."""

    def __init__(self, fault: dict[str, Any], *, url: str = "") -> None:
        super().__init__(format_fault(fault))
        self.fault = fault
        self.url = url


class RateLimitTimeoutError(QBOLinkError):
    """The caller's deadline passed while waiting for a rate-limit slot."""


def format_fault(fault: dict[str, Any]) -> str:
    """Render a QBO ``Fault`` body as a one-line message."""
    errors = fault.get("Error") or fault.get("error") or []
    if isinstance(errors, list) and errors:
        first = errors[0] if isinstance(errors[0], dict) else {}
        detail = first.get("Detail") or first.get("Message") or "unknown"
        code = first.get("code", "?")
        return f"QBO API Error: {detail} (Code: {code})"
    return "Unknown QBO API error"
