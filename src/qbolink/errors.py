"""
Error classification — maps raw failures to a fixed taxonomy and a
recommended recovery action.

The classifier is the only place that decides whether a failure is
retried, surfaced, or treated as a dead credential. The kind → action
table is a constructor argument so the policy can be tuned (and tested)
independently of the code that acts on it.

Timeouts and network errors mean different things depending on where
they happen: on the refresh path the credential cannot be confirmed and
is dropped, on an ordinary fetch they are simply retried. Callers pass a
:class:`CallSite` to pick the right mapping.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from qbolink.exceptions import (
    ConfigurationError,
    ProviderFaultError,
    ProviderHTTPError,
    RateLimitTimeoutError,
    ReauthRequiredError,
    TokenNotFoundError,
)

logger = logging.getLogger("qbolink.errors")


class ErrorKind(str, Enum):
    AUTH_INVALID_GRANT = "auth_invalid_grant"
    AUTH_CONFIG_ERROR = "auth_config_error"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


class RecoveryAction(str, Enum):
    CLEAR_TOKEN_AND_REAUTH = "clear_token_and_reauth"
    REPORT_CONFIG_ISSUE = "report_config_issue"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    FAIL_FAST = "fail_fast"


class CallSite(str, Enum):
    REFRESH = "refresh"
    FETCH = "fetch"


ActionTable = dict[tuple[ErrorKind, CallSite], RecoveryAction]


def _both(action: RecoveryAction, kind: ErrorKind) -> ActionTable:
    return {(kind, CallSite.REFRESH): action, (kind, CallSite.FETCH): action}


DEFAULT_ACTIONS: ActionTable = {
    **_both(RecoveryAction.CLEAR_TOKEN_AND_REAUTH, ErrorKind.AUTH_INVALID_GRANT),
    **_both(RecoveryAction.REPORT_CONFIG_ISSUE, ErrorKind.AUTH_CONFIG_ERROR),
    **_both(RecoveryAction.RETRY_WITH_BACKOFF, ErrorKind.RATE_LIMITED),
    (ErrorKind.TIMEOUT, CallSite.REFRESH): RecoveryAction.CLEAR_TOKEN_AND_REAUTH,
    (ErrorKind.TIMEOUT, CallSite.FETCH): RecoveryAction.RETRY_WITH_BACKOFF,
    (ErrorKind.NETWORK_ERROR, CallSite.REFRESH): RecoveryAction.CLEAR_TOKEN_AND_REAUTH,
    (ErrorKind.NETWORK_ERROR, CallSite.FETCH): RecoveryAction.RETRY_WITH_BACKOFF,
    **_both(RecoveryAction.RETRY_WITH_BACKOFF, ErrorKind.SERVER_ERROR),
    **_both(RecoveryAction.FAIL_FAST, ErrorKind.VALIDATION_ERROR),
    **_both(RecoveryAction.FAIL_FAST, ErrorKind.UNKNOWN),
}

# OAuth2 error codes (RFC 6749 §5.2) and the QBO/Intuit variants seen in the wild
_INVALID_GRANT_CODES = {"invalid_grant", "invalid_token", "token_expired", "authenticationfailed", "3200"}
_CONFIG_CODES = {"invalid_client", "unauthorized_client", "invalid_scope", "unsupported_grant_type", "invalid_request_client"}
_RATE_LIMIT_CODES = {"throttled", "rate_limit_exceeded", "ratelimitexceeded", "003001"}
_VALIDATION_CODES = {"invalid_request", "validationfault", "2010", "2020", "2030", "4000", "4001"}

# Where an intermediary (e.g. an n8n proxy) tucks the upstream error
_NESTED_KEYS = ("errorDetails", "error_details", "details", "body", "response", "data", "Fault", "fault", "Error")
_CODE_KEYS = ("error", "error_code", "errorCode", "code", "rawErrorMessage", "error_description")
_MAX_DEPTH = 6


@dataclass(frozen=True)
class Classification:
    """The result of classifying one failure."""

    kind: ErrorKind
    action: RecoveryAction
    message: str
    status_code: int | None = None
    code: str | None = None
    retry_after: float | None = None

    @property
    def retryable(self) -> bool:
        return self.action is RecoveryAction.RETRY_WITH_BACKOFF

    @property
    def invalidates_token(self) -> bool:
        return self.action is RecoveryAction.CLEAR_TOKEN_AND_REAUTH

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "action": self.action.value,
            "message": self.message,
            "status_code": self.status_code,
            "code": self.code,
            "retry_after": self.retry_after,
        }


def extract_error_codes(body: Any, depth: int = 0) -> list[str]:
    """Collect every candidate error code in a possibly-wrapped error body.

    Walks dicts and lists, and decodes JSON that a proxy has serialized into
    a string field. Codes are lower-cased; innermost codes come last.
    """
    if depth > _MAX_DEPTH or body is None:
        return []

    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")

    if isinstance(body, str):
        text = body.strip()
        if text[:1] in ("{", "["):
            try:
                return extract_error_codes(json.loads(text), depth + 1)
            except ValueError:
                pass
        return [text.lower()] if text and len(text) <= 200 else []

    codes: list[str] = []
    if isinstance(body, list):
        for item in body:
            codes.extend(extract_error_codes(item, depth + 1))
        return codes

    if isinstance(body, dict):
        for key in _CODE_KEYS:
            value = body.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool):
                codes.append(str(value).strip().lower())
            elif isinstance(value, (list, dict)):
                codes.extend(extract_error_codes(value, depth + 1))
        for key in _NESTED_KEYS:
            if key in body:
                codes.extend(extract_error_codes(body[key], depth + 1))
    return codes


def _match_codes(codes: list[str]) -> tuple[ErrorKind, str] | None:
    """Pick the most specific kind from a list of codes, innermost first."""
    for code in reversed(codes):
        if code in _INVALID_GRANT_CODES or "invalid_grant" in code:
            return ErrorKind.AUTH_INVALID_GRANT, code
        if code in _CONFIG_CODES or "invalid_client" in code:
            return ErrorKind.AUTH_CONFIG_ERROR, code
        if code in _RATE_LIMIT_CODES:
            return ErrorKind.RATE_LIMITED, code
        if code in _VALIDATION_CODES:
            return ErrorKind.VALIDATION_ERROR, code
    return None


def _parse_retry_after(headers: dict[str, str]) -> float | None:
    for key, value in headers.items():
        if key.lower() == "retry-after":
            try:
                return max(float(value), 0.0)
            except (TypeError, ValueError):
                return None
    return None


def _kind_for_status(status: int) -> ErrorKind:
    if status == 401:
        return ErrorKind.AUTH_INVALID_GRANT
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 408 or status == 504:
        return ErrorKind.TIMEOUT
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    if status in (400, 403, 404, 405, 409, 422):
        return ErrorKind.VALIDATION_ERROR
    return ErrorKind.UNKNOWN


class ErrorClassifier:
    """Classify failures into :class:`ErrorKind` plus a :class:`RecoveryAction`.

    Args:
        actions: Overrides for the default kind/call-site → action table.
    """

    def __init__(self, actions: ActionTable | None = None) -> None:
        self._actions: ActionTable = {**DEFAULT_ACTIONS, **(actions or {})}

    def action_for(self, kind: ErrorKind, call_site: CallSite) -> RecoveryAction:
        return self._actions.get((kind, call_site), RecoveryAction.FAIL_FAST)

    def classify(self, error: BaseException, call_site: CallSite = CallSite.FETCH) -> Classification:
        kind, message, status, code, retry_after = self._inspect(error)
        result = Classification(
            kind=kind,
            action=self.action_for(kind, call_site),
            message=message,
            status_code=status,
            code=code,
            retry_after=retry_after,
        )
        logger.debug(
            "Classified %s at %s as %s -> %s",
            type(error).__name__,
            call_site.value,
            result.kind.value,
            result.action.value,
        )
        return result

    def classify_body(
        self,
        body: Any,
        call_site: CallSite = CallSite.FETCH,
        *,
        status_code: int = 400,
    ) -> Classification:
        """Classify a raw error body (as returned by a proxy) directly."""
        return self.classify(ProviderHTTPError(status_code, body), call_site)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def _inspect(
        self, error: BaseException
    ) -> tuple[ErrorKind, str, int | None, str | None, float | None]:
        if isinstance(error, ProviderHTTPError):
            retry_after = _parse_retry_after(error.headers)
            matched = _match_codes(extract_error_codes(error.body))
            if matched:
                kind, code = matched
                return kind, f"{kind.value} ({code}) from HTTP {error.status_code}", error.status_code, code, retry_after
            kind = _kind_for_status(error.status_code)
            return kind, str(error), error.status_code, None, retry_after

        if isinstance(error, ProviderFaultError):
            matched = _match_codes(extract_error_codes(error.fault))
            if matched:
                kind, code = matched
                return kind, str(error), None, code, None
            return ErrorKind.VALIDATION_ERROR, str(error), None, None, None

        if isinstance(error, ConfigurationError):
            return ErrorKind.AUTH_CONFIG_ERROR, str(error), None, None, None

        if isinstance(error, ReauthRequiredError) and isinstance(error.cause, Classification):
            # The stored token was kept; a misconfigured client is not a dead grant
            if error.cause.kind is ErrorKind.AUTH_CONFIG_ERROR:
                return ErrorKind.AUTH_CONFIG_ERROR, str(error), error.cause.status_code, error.cause.code, None

        if isinstance(error, (ReauthRequiredError, TokenNotFoundError)):
            return ErrorKind.AUTH_INVALID_GRANT, str(error), None, None, None

        # Checked before the generic transport branch: httpx timeouts are transport errors too
        if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError, RateLimitTimeoutError)):
            return ErrorKind.TIMEOUT, str(error) or "Request timed out", None, None, None

        if isinstance(error, (httpx.TransportError, ConnectionError, OSError)):
            return ErrorKind.NETWORK_ERROR, str(error) or "Network connection failed", None, None, None

        if isinstance(error, httpx.HTTPStatusError):
            kind = _kind_for_status(error.response.status_code)
            return kind, str(error), error.response.status_code, None, None

        if isinstance(error, (ValueError, KeyError)):
            return ErrorKind.VALIDATION_ERROR, f"Unexpected response: {error}", None, None, None

        return ErrorKind.UNKNOWN, f"Unexpected error: {error}", None, None, None
