"""
Token lifecycle manager — keeps one usable QuickBooks credential per owner.

States::

    NoToken ──exchange──▶ Valid ──threshold──▶ NearExpiry ──▶ Expired
                            ▲                      │             │
                            │                      ▼             ▼
                            └────── success ── Refreshing ◀──────┘
                                                   │ failure
                                                   ▼
                                   Invalid ──clear──▶ NoToken

Refresh is single-flight per owner: concurrent callers share one network
exchange and all observe the same :class:`RefreshResult`. Each exchange is
bounded by a hard timeout (10s by default); a timeout, a network error and
an ``invalid_grant`` are treated alike on this path, because a provider that
is unreachable cannot be told apart from one that revoked the grant.

Failure handling fails closed only when no usable credential remains:

- token already expired → the credential is cleared, caller must reconnect;
- token only near expiry → the old token is kept and stays in use
  (except on ``invalid_grant``, which means the grant is gone);
- client misconfiguration → nothing is cleared, the issue is reported.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta

from qbolink.auth.oauth2 import OAuthTokenClient
from qbolink.auth.store import TokenStore
from qbolink.clock import Clock, SystemClock
from qbolink.errors import CallSite, Classification, ErrorClassifier, ErrorKind, RecoveryAction
from qbolink.exceptions import ReauthRequiredError
from qbolink.models.token import TokenRecord, TokenState

logger = logging.getLogger("qbolink.auth.lifecycle")

DEFAULT_REFRESH_TIMEOUT = 10.0
DEFAULT_NEAR_EXPIRY_SECONDS = 300.0

CLEAR_MODES = ("delete", "deactivate")


@dataclass(frozen=True)
class RefreshResult:
    """Shared outcome of one refresh exchange.

    ``record`` is the token that is usable after the attempt: the new one on
    success, the kept one when a near-expiry refresh failed, None once the
    credential has been cleared or never existed.
    """

    owner_id: str
    success: bool
    record: TokenRecord | None = None
    error: Classification | None = None
    cleared: bool = False
    reason: str = ""

    @property
    def reauth_required(self) -> bool:
        return self.record is None


class TokenLifecycleManager:
    """Validates, refreshes and clears credentials through a :class:`TokenStore`.

    Usage::

        manager = TokenLifecycleManager(store, token_client)
        if await manager.validate_and_refresh_if_needed("user_123"):
            record = await manager.get_valid_token("user_123")
    """

    def __init__(
        self,
        store: TokenStore,
        token_client: OAuthTokenClient,
        *,
        classifier: ErrorClassifier | None = None,
        clock: Clock | None = None,
        refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT,
        near_expiry_seconds: float = DEFAULT_NEAR_EXPIRY_SECONDS,
        clear_mode: str = "delete",
    ) -> None:
        if clear_mode not in CLEAR_MODES:
            raise ValueError(f"clear_mode must be one of {CLEAR_MODES}, got {clear_mode!r}")
        self.store = store
        self.token_client = token_client
        self.classifier = classifier or ErrorClassifier()
        self.clock = clock or SystemClock()
        self.refresh_timeout = refresh_timeout
        self.near_expiry = timedelta(seconds=near_expiry_seconds)
        self.clear_mode = clear_mode
        self._inflight: dict[str, asyncio.Future[RefreshResult]] = {}
        self._invalidated: set[str] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def state_of(self, record: TokenRecord | None) -> TokenState:
        """Classify a record against the clock (ignores in-flight refreshes)."""
        if record is None or not record.is_active:
            return TokenState.NO_TOKEN
        now = self.clock.now()
        if now >= record.expires_at:
            return TokenState.EXPIRED
        if record.expires_at - now <= self.near_expiry:
            return TokenState.NEAR_EXPIRY
        return TokenState.VALID

    async def get_state(self, owner_id: str) -> TokenState:
        if owner_id in self._invalidated:
            return TokenState.INVALID
        if owner_id in self._inflight:
            return TokenState.REFRESHING
        return self.state_of(await self.store.get_active(owner_id))

    # ------------------------------------------------------------------
    # Code exchange (NoToken -> Valid)
    # ------------------------------------------------------------------

    async def exchange_code(
        self,
        owner_id: str,
        code: str,
        realm_id: str,
        redirect_uri: str,
        *,
        code_verifier: str | None = None,
        timeout: float | None = None,
    ) -> TokenRecord:
        """Exchange an authorization code and install the resulting token."""
        grant = await asyncio.wait_for(
            self.token_client.exchange_code(code, redirect_uri, code_verifier=code_verifier),
            timeout or self.refresh_timeout,
        )
        record = TokenRecord.from_grant(owner_id, realm_id, grant, self.clock.now())
        await self.store.replace_atomically(owner_id, record)
        self._invalidated.discard(owner_id)
        logger.info("Connected QuickBooks realm %s for owner %s", realm_id, owner_id)
        return record

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_and_refresh_if_needed(self, owner_id: str, *, timeout: float | None = None) -> bool:
        """Make sure the owner has a usable token, refreshing if needed.

        Returns:
            True if a usable token exists afterwards. False means the caller
            must send the user through the consent flow again.
        """
        usable, _ = await self._ensure_usable(owner_id, timeout)
        return usable

    async def _ensure_usable(
        self, owner_id: str, timeout: float | None
    ) -> tuple[bool, RefreshResult | None]:
        record = await self.store.get_active(owner_id)
        state = self.state_of(record)

        if state is TokenState.NO_TOKEN:
            return False, None
        if state is TokenState.VALID:
            return True, None

        logger.debug("Token for owner %s is %s, refreshing", owner_id, state.value)
        result = await self.refresh(owner_id, timeout=timeout)
        if result.success:
            return True, result
        # A kept token is only usable if it has not expired in the meantime
        usable = result.record is not None and self.clock.now() < result.record.expires_at
        return usable, result

    async def get_valid_token(self, owner_id: str, *, timeout: float | None = None) -> TokenRecord:
        """Return the current usable token, refreshing it first if needed.

        Raises:
            ReauthRequiredError: If no usable token remains. ``cause`` carries
                the refresh failure's classification when there was one.
        """
        usable, result = await self._ensure_usable(owner_id, timeout)
        if not usable:
            cause = result.error if result is not None else None
            reason = result.reason if result is not None and result.reason else "no valid QuickBooks token"
            raise ReauthRequiredError(owner_id, reason, cause=cause)
        record = await self.store.get_active(owner_id)
        if record is None or self.clock.now() >= record.expires_at:
            raise ReauthRequiredError(owner_id, "token disappeared during validation")
        return record

    # ------------------------------------------------------------------
    # Refresh (single-flight)
    # ------------------------------------------------------------------

    async def refresh(self, owner_id: str, *, timeout: float | None = None) -> RefreshResult:
        """Refresh the owner's token, joining any refresh already in flight.

        ``timeout`` bounds only this caller's wait; the shared exchange keeps
        running for the other callers and is bounded by ``refresh_timeout``.
        """
        future = self._inflight.get(owner_id)
        if future is None:
            future = asyncio.ensure_future(self._run_refresh(owner_id))
            self._inflight[owner_id] = future
            future.add_done_callback(lambda f, o=owner_id: self._forget(o, f))
        else:
            logger.debug("Joining in-flight refresh for owner %s", owner_id)

        waiter = asyncio.shield(future)
        if timeout is None:
            return await waiter
        return await asyncio.wait_for(waiter, timeout)

    def _forget(self, owner_id: str, future: asyncio.Future[RefreshResult]) -> None:
        if self._inflight.get(owner_id) is future:
            del self._inflight[owner_id]

    async def _run_refresh(self, owner_id: str) -> RefreshResult:
        record = await self.store.get_active(owner_id)
        if record is None:
            return RefreshResult(owner_id, success=False, reason="no token stored")

        try:
            grant = await asyncio.wait_for(
                self.token_client.refresh(record.refresh_token),
                self.refresh_timeout,
            )
        except Exception as e:
            classification = self.classifier.classify(e, CallSite.REFRESH)
            logger.warning(
                "Token refresh failed for owner %s: %s (%s)",
                owner_id,
                classification.kind.value,
                classification.message,
            )
            return await self._handle_refresh_failure(owner_id, record, classification)

        new_record = TokenRecord.from_grant(owner_id, record.realm_id, grant, self.clock.now())
        await self.store.replace_atomically(owner_id, new_record)
        logger.info("Refreshed token for owner %s (realm %s)", owner_id, record.realm_id)
        return RefreshResult(owner_id, success=True, record=new_record)

    async def _handle_refresh_failure(
        self,
        owner_id: str,
        record: TokenRecord,
        classification: Classification,
    ) -> RefreshResult:
        if classification.action is RecoveryAction.REPORT_CONFIG_ISSUE:
            logger.error(
                "QuickBooks client configuration rejected while refreshing for owner %s; "
                "keeping stored token",
                owner_id,
            )
            return RefreshResult(
                owner_id,
                success=False,
                record=record,
                error=classification,
                reason="client configuration issue",
            )

        still_usable = self.clock.now() < record.expires_at
        if still_usable and classification.kind is not ErrorKind.AUTH_INVALID_GRANT:
            logger.info("Keeping still-valid token for owner %s after failed refresh", owner_id)
            return RefreshResult(
                owner_id,
                success=False,
                record=record,
                error=classification,
                reason="refresh failed; existing token kept",
            )

        self._invalidated.add(owner_id)
        try:
            await self.clear(owner_id)
        finally:
            self._invalidated.discard(owner_id)
        return RefreshResult(
            owner_id,
            success=False,
            error=classification,
            cleared=True,
            reason="credential invalidated",
        )

    # ------------------------------------------------------------------
    # Clearing (Invalid -> NoToken)
    # ------------------------------------------------------------------

    async def clear(self, owner_id: str) -> int:
        """Remove the owner's credentials. Safe to call repeatedly."""
        if self.clear_mode == "deactivate":
            count = await self.store.deactivate_all(owner_id)
        else:
            count = await self.store.delete_all(owner_id)
        if count:
            logger.info("Cleared %d token record(s) for owner %s", count, owner_id)
        return count
