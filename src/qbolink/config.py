"""
qbolink configuration management.

Supports loading from YAML files, environment variables, and keyword overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from qbolink.auth.oauth2 import QBO_ACCOUNTING_SCOPE, QBO_AUTH_URL, QBO_TOKEN_URL

_TRUTHY = ("1", "true", "yes")


class OAuthConfig(BaseModel):
    """Intuit app credentials and OAuth endpoints."""

    client_id: str = Field(default="", description="Intuit app client ID")
    client_secret: str = Field(default="", description="Intuit app client secret")
    redirect_uri: str = Field(default="http://localhost:8080/callback")
    token_url: str = QBO_TOKEN_URL
    authorize_url: str = QBO_AUTH_URL
    scopes: list[str] = Field(default_factory=lambda: [QBO_ACCOUNTING_SCOPE])


class APIConfig(BaseModel):
    """Where report calls go."""

    sandbox: bool = False
    base_url: str | None = Field(default=None, description="Override the QBO API host")
    proxy_base_url: str | None = Field(
        default=None,
        description="Route calls through an intermediary that accepts {method, endpoint, params, data}",
    )
    minor_version: int | None = 75
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout in seconds")


class RateLimitConfig(BaseModel):
    """Sliding-window cap on report calls across all concurrent work."""

    max_requests: int = Field(default=450, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)


class RetryConfig(BaseModel):
    """Backoff for retryable failures on the fetch path."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1.0)
    jitter: bool = True


class TokenConfig(BaseModel):
    """Token lifecycle and storage settings."""

    refresh_timeout: float = Field(default=10.0, gt=0, description="Hard bound on one refresh exchange")
    near_expiry_seconds: float = Field(default=300.0, ge=0)
    backend: Literal["memory", "file", "sql"] = "file"
    store_path: str | None = Field(default=None, description="Directory for the file backend")
    database_url: str | None = Field(default=None, description="SQLAlchemy URL for the sql backend")
    encryption_secret: str | None = Field(
        default=None,
        description="Secret for token encryption (file backend falls back to a machine key)",
    )
    clear_mode: Literal["delete", "deactivate"] = "delete"


class QBOLinkConfig(BaseModel):
    """Root configuration for qbolink."""

    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)

    @classmethod
    def load(cls, config_path: str | None = None, **overrides: Any) -> QBOLinkConfig:
        """Load configuration from file, env vars, and overrides.

        Priority: overrides > env vars > config file > defaults.
        """
        data: dict[str, Any] = {}

        # 1. Load from YAML file if provided
        if config_path:
            path = Path(config_path)
            if path.exists():
                with open(path) as f:
                    data = yaml.safe_load(f) or {}

        # 2. Override from environment variables
        env_client_id = os.environ.get("QBOLINK_CLIENT_ID")
        env_secret = os.environ.get("QBOLINK_CLIENT_SECRET")
        env_redirect = os.environ.get("QBOLINK_REDIRECT_URI")
        if env_client_id or env_secret or env_redirect:
            oauth = data.get("oauth", {})
            if env_client_id:
                oauth["client_id"] = env_client_id
            if env_secret:
                oauth["client_secret"] = env_secret
            if env_redirect:
                oauth["redirect_uri"] = env_redirect
            data["oauth"] = oauth

        env_sandbox = os.environ.get("QBOLINK_SANDBOX")
        env_proxy = os.environ.get("QBOLINK_PROXY_BASE_URL")
        if env_sandbox or env_proxy:
            api = data.get("api", {})
            if env_sandbox:
                api["sandbox"] = env_sandbox.lower() in _TRUTHY
            if env_proxy:
                api["proxy_base_url"] = env_proxy
            data["api"] = api

        env_max_requests = os.environ.get("QBOLINK_MAX_REQUESTS_PER_MINUTE")
        if env_max_requests:
            rate_limit = data.get("rate_limit", {})
            rate_limit["max_requests"] = env_max_requests
            data["rate_limit"] = rate_limit

        env_retries = os.environ.get("QBOLINK_MAX_RETRIES")
        env_delay = os.environ.get("QBOLINK_RETRY_DELAY")
        if env_retries or env_delay:
            retry = data.get("retry", {})
            if env_retries:
                retry["max_attempts"] = env_retries
            if env_delay:
                retry["base_delay"] = env_delay
            data["retry"] = retry

        env_db = os.environ.get("QBOLINK_DATABASE_URL")
        if env_db:
            tokens = data.get("tokens", {})
            tokens["database_url"] = env_db
            tokens.setdefault("backend", "sql")
            data["tokens"] = tokens

        # 3. Apply keyword overrides
        data.update(overrides)

        return cls.model_validate(data)
