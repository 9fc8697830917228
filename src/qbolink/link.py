"""
qbolink — Main entry point.

The QBOLink class wires configuration, token storage, the token lifecycle
manager, the shared rate limiter and the fetch orchestrator together, and
exposes the operations an application needs to keep a QuickBooks
connection alive and pull financial data through it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from qbolink.auth.crypto import TokenCipher
from qbolink.auth.lifecycle import TokenLifecycleManager
from qbolink.auth.oauth2 import OAuthTokenClient, generate_pkce_pair, generate_state
from qbolink.auth.sql_store import SQLTokenStore
from qbolink.auth.store import FileTokenStore, MemoryTokenStore, TokenStore
from qbolink.clock import Clock, SystemClock
from qbolink.config import QBOLinkConfig
from qbolink.connectors.quickbooks import DateRange, QuickBooksReportClient, standard_report_requests
from qbolink.errors import ErrorClassifier
from qbolink.exceptions import ConfigurationError
from qbolink.models.fetch import AggregateResult, FetchRequest
from qbolink.models.token import TokenRecord, TokenState
from qbolink.orchestrator import FetchOrchestrator, ProgressCallback
from qbolink.resilience.rate_limiter import SlidingWindowRateLimiter
from qbolink.resilience.retry import RetryPolicy

logger = logging.getLogger("qbolink")


def build_token_store(config: QBOLinkConfig) -> TokenStore:
    """Create the token store selected by ``config.tokens.backend``."""
    tokens = config.tokens
    cipher = TokenCipher.from_secret(tokens.encryption_secret) if tokens.encryption_secret else None

    if tokens.backend == "memory":
        return MemoryTokenStore()
    if tokens.backend == "file":
        token_dir = Path(tokens.store_path).expanduser() if tokens.store_path else None
        return FileTokenStore(token_dir, cipher=cipher)
    if tokens.backend == "sql":
        if not tokens.database_url:
            raise ConfigurationError("tokens.database_url is required for the sql backend (or set QBOLINK_DATABASE_URL)")
        return SQLTokenStore(tokens.database_url, cipher=cipher)
    raise ConfigurationError(f"Unknown token backend: {tokens.backend}")


@dataclass
class QBOLink:
    """Top-level entry point for qbolink.

    Usage::

        from qbolink import QBOLink

        async with QBOLink.from_config("qbolink.yaml") as link:
            result = await link.fetch_financial_reports("user_123")
            if result.reauth_required:
                print(link.authorization_url()["url"])

    Components left as None are built from ``config`` on setup, so tests
    and embedding applications can inject their own.
    """

    config: QBOLinkConfig
    store: TokenStore | None = None
    token_client: OAuthTokenClient | None = None
    report_client: QuickBooksReportClient | None = None
    clock: Clock | None = None
    limiter: SlidingWindowRateLimiter | None = None
    _lifecycle: TokenLifecycleManager | None = field(default=None, init=False, repr=False)
    _orchestrator: FetchOrchestrator | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_config(cls, config_path: str | None = None, **overrides: Any) -> QBOLink:
        """Create a QBOLink instance from a config file or keyword arguments."""
        config = QBOLinkConfig.load(config_path, **overrides)
        instance = cls(config=config)
        instance._setup()
        return instance

    def _setup(self) -> None:
        """Build every component not injected by the caller."""
        cfg = self.config
        if self.store is None:
            self.store = build_token_store(cfg)
        if self.token_client is None:
            self.token_client = OAuthTokenClient(
                cfg.oauth.client_id,
                cfg.oauth.client_secret,
                token_url=cfg.oauth.token_url,
                authorize_url=cfg.oauth.authorize_url,
                scopes=cfg.oauth.scopes,
            )
        if self.report_client is None:
            self.report_client = QuickBooksReportClient(
                sandbox=cfg.api.sandbox,
                base_url=cfg.api.base_url,
                proxy_base_url=cfg.api.proxy_base_url,
                minor_version=cfg.api.minor_version,
                timeout=cfg.api.request_timeout,
            )
        if self.clock is None:
            self.clock = SystemClock()
        if self.limiter is None:
            self.limiter = SlidingWindowRateLimiter(
                cfg.rate_limit.max_requests,
                cfg.rate_limit.window_seconds,
            )

        classifier = ErrorClassifier()
        self._lifecycle = TokenLifecycleManager(
            self.store,
            self.token_client,
            classifier=classifier,
            clock=self.clock,
            refresh_timeout=cfg.tokens.refresh_timeout,
            near_expiry_seconds=cfg.tokens.near_expiry_seconds,
            clear_mode=cfg.tokens.clear_mode,
        )
        self._orchestrator = FetchOrchestrator(
            self._lifecycle,
            self.report_client,
            self.limiter,
            retry_policy=RetryPolicy(
                max_attempts=cfg.retry.max_attempts,
                base_delay=cfg.retry.base_delay,
                max_delay=cfg.retry.max_delay,
                exponential_base=cfg.retry.exponential_base,
                jitter=cfg.retry.jitter,
            ),
            classifier=classifier,
        )
        logger.info(
            "qbolink initialized (%s token store, %d requests / %.0fs)",
            cfg.tokens.backend,
            cfg.rate_limit.max_requests,
            cfg.rate_limit.window_seconds,
        )

    @property
    def lifecycle(self) -> TokenLifecycleManager:
        if self._lifecycle is None:
            self._setup()
        assert self._lifecycle is not None
        return self._lifecycle

    @property
    def orchestrator(self) -> FetchOrchestrator:
        if self._orchestrator is None:
            self._setup()
        assert self._orchestrator is not None
        return self._orchestrator

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def authorization_url(self, *, use_pkce: bool = False) -> dict[str, str]:
        """Consent URL plus the state (and PKCE verifier) to keep for the callback."""
        if self._lifecycle is None:
            self._setup()
        assert self.token_client is not None
        state = generate_state()
        result = {"state": state}
        challenge = None
        if use_pkce:
            verifier, challenge = generate_pkce_pair()
            result["code_verifier"] = verifier
        result["url"] = self.token_client.get_authorization_url(
            self.config.oauth.redirect_uri,
            state,
            code_challenge=challenge,
        )
        return result

    async def exchange_code(
        self,
        owner_id: str,
        code: str,
        realm_id: str,
        *,
        code_verifier: str | None = None,
    ) -> TokenRecord:
        """Finish the consent flow and store the owner's first token."""
        return await self.lifecycle.exchange_code(
            owner_id,
            code,
            realm_id,
            self.config.oauth.redirect_uri,
            code_verifier=code_verifier,
        )

    async def get_state(self, owner_id: str) -> TokenState:
        return await self.lifecycle.get_state(owner_id)

    async def get_valid_token(self, owner_id: str, *, timeout: float | None = None) -> TokenRecord:
        """Usable token for ``owner_id``; raises ReauthRequiredError otherwise."""
        return await self.lifecycle.get_valid_token(owner_id, timeout=timeout)

    async def force_reauthenticate(self, owner_id: str, *, timeout: float | None = None) -> int:
        """Drop the owner's credential so the next use requires consent."""
        logger.info("Forcing re-authentication for owner %s", owner_id)
        if timeout is None:
            return await self.lifecycle.clear(owner_id)
        return await asyncio.wait_for(self.lifecycle.clear(owner_id), timeout)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def run_fetch(
        self,
        owner_id: str,
        requests: list[FetchRequest],
        *,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AggregateResult:
        return await self.orchestrator.run_fetch(
            owner_id,
            requests,
            timeout=timeout,
            on_progress=on_progress,
        )

    async def fetch_financial_reports(
        self,
        owner_id: str,
        date_range: DateRange | None = None,
        *,
        customer_id: str | None = None,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AggregateResult:
        """Fetch the standard financial data set for the owner's company."""
        return await self.run_fetch(
            owner_id,
            standard_report_requests(date_range, customer_id),
            timeout=timeout,
            on_progress=on_progress,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self.token_client is not None:
            await self.token_client.close()
        if self.report_client is not None:
            await self.report_client.close()
        if self.store is not None:
            await self.store.close()

    async def __aenter__(self) -> QBOLink:
        if self._lifecycle is None:
            self._setup()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
