"""
OAuth2 token endpoint client for QuickBooks Online.

Handles the two grants the lifecycle manager needs:

- ``authorization_code`` exchange after the user consents in a browser.
- ``refresh_token`` rotation.

Also builds the consent URL (with PKCE and CSRF state). The browser
redirect itself is left to the embedding application.

QuickBooks token endpoint docs:
  https://developer.intuit.com/app/developer/qbo/docs/develop/authentication-and-authorization/oauth-2.0
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from typing import Any
from urllib.parse import urlencode

import httpx

from qbolink.exceptions import ConfigurationError, ProviderHTTPError
from qbolink.models.token import TokenGrant

logger = logging.getLogger("qbolink.auth.oauth2")

QBO_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
QBO_AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
QBO_ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"


# ---------------------------------------------------------------------------
# PKCE helpers
# ---------------------------------------------------------------------------

def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge pair.

    Returns:
        Tuple of (code_verifier, code_challenge) for OAuth2 PKCE flow.
    """
    code_verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(code_verifier.encode()).digest()
    code_challenge = base64.urlsafe_b64encode(digest).decode().rstrip("=")
    return code_verifier, code_challenge


def generate_state() -> str:
    """Random CSRF state value for the authorization request."""
    return secrets.token_urlsafe(32)


def _parse_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class OAuthTokenClient:
    """Talks to the OAuth2 token endpoint.

    The client never stores tokens; it returns :class:`TokenGrant` objects
    and leaves persistence to the token store.

    Usage::

        client = OAuthTokenClient(client_id="...", client_secret="...")
        grant = await client.exchange_code(code, redirect_uri)
        grant = await client.refresh(grant.refresh_token)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        token_url: str = QBO_TOKEN_URL,
        authorize_url: str = QBO_AUTH_URL,
        scopes: list[str] | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.authorize_url = authorize_url
        self.scopes = scopes or [QBO_ACCOUNTING_SCOPE]
        self.timeout = timeout
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create a reusable httpx client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError(
                "QuickBooks client_id and client_secret are required. "
                "Set QBOLINK_CLIENT_ID and QBOLINK_CLIENT_SECRET."
            )

    async def _post_token(self, payload: dict[str, str], *, previous_refresh_token: str = "") -> TokenGrant:
        self._require_credentials()
        client = await self._get_client()
        resp = await client.post(
            self.token_url,
            data=payload,
            auth=(self.client_id, self.client_secret),
            headers={"Accept": "application/json"},
        )
        body = _parse_body(resp)

        if resp.is_error:
            raise ProviderHTTPError(resp.status_code, body, url=self.token_url, headers=dict(resp.headers))

        # Intermediaries sometimes answer 200 with an error document
        if not isinstance(body, dict) or "access_token" not in body:
            raise ProviderHTTPError(resp.status_code, body, url=self.token_url, headers=dict(resp.headers))

        return TokenGrant.from_oauth_response(body, previous_refresh_token=previous_refresh_token)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access/refresh pair.

        Raises:
            ProviderHTTPError: If the endpoint rejects the request.
            httpx.TransportError: On network failure or timeout.
        """
        if not refresh_token:
            raise ValueError("No refresh token available; authenticate first.")

        logger.debug("Refreshing QuickBooks access token")
        grant = await self._post_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            previous_refresh_token=refresh_token,
        )
        logger.info("Refreshed QuickBooks access token (expires in %ds)", grant.expires_in)
        return grant

    async def exchange_code(
        self,
        code: str,
        redirect_uri: str,
        *,
        code_verifier: str | None = None,
    ) -> TokenGrant:
        """Exchange an authorization code for the initial token pair.

        Args:
            code: The authorization code from the callback URL.
            redirect_uri: The redirect URI used in the authorization request.
            code_verifier: PKCE code verifier (if PKCE was used).
        """
        payload: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            payload["code_verifier"] = code_verifier

        grant = await self._post_token(payload)
        logger.info("Exchanged authorization code for QuickBooks tokens")
        return grant

    def get_authorization_url(
        self,
        redirect_uri: str,
        state: str = "",
        *,
        code_challenge: str | None = None,
        extra_params: dict[str, str] | None = None,
    ) -> str:
        """Build the URL the user visits to grant access.

        Args:
            redirect_uri: Where the provider redirects after authorization.
            state: CSRF protection state parameter.
            code_challenge: PKCE code challenge (SHA256 hash of code_verifier).
            extra_params: Additional provider-specific parameters.
        """
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.scopes),
        }
        if state:
            params["state"] = state
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        if extra_params:
            params.update(extra_params)

        return f"{self.authorize_url}?{urlencode(params)}"
