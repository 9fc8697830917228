"""
Fetch orchestrator — runs a batch of independent report requests against
one owner's credential.

Flow of a run:

1. Make sure the owner has a usable token; if not, the run ends
   immediately as ``REAUTH_REQUIRED`` without attempting anything.
2. Every request becomes its own task. Each attempt takes a slot from the
   shared rate limiter (the only throttle), re-reads the token, and calls
   the transport.
3. Failures are classified once and handled by one retry policy:
   retryable kinds back off and try again, the rest stop at once.
4. The first auth-invalidating failure clears the credential (once per
   run), cancels the remaining work and marks the run ``REAUTH_REQUIRED``.
5. Otherwise the run is ``COMPLETE`` or ``PARTIAL`` with a completeness
   ratio and the failed endpoints named.

Cancelling ``run_fetch`` (or hitting its ``timeout``) cancels every
in-flight request; rate-limit slots whose call never started are returned.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from qbolink.auth.lifecycle import TokenLifecycleManager
from qbolink.errors import CallSite, Classification, ErrorClassifier, RecoveryAction
from qbolink.models.fetch import (
    AggregateResult,
    EndpointOutcome,
    FetchProgress,
    FetchRequest,
    RunStatus,
)
from qbolink.models.token import TokenRecord
from qbolink.resilience.rate_limiter import SlidingWindowRateLimiter
from qbolink.resilience.retry import RetryPolicy

logger = logging.getLogger("qbolink.orchestrator")

ProgressCallback = Callable[[FetchProgress], None]


class ReportTransport(Protocol):
    """Anything that can perform one authenticated report call."""

    async def fetch(self, request: FetchRequest, token: TokenRecord) -> Any:
        ...


@dataclass
class _RunState:
    owner_id: str
    total: int
    completed: int = 0
    reauth_required: bool = False
    reason: str = ""


class FetchOrchestrator:
    """Concurrent, rate-limited, retrying fetch of many report requests.

    Usage::

        orchestrator = FetchOrchestrator(lifecycle, QuickBooksReportClient(), limiter)
        result = await orchestrator.run_fetch("user_123", standard_report_requests())
        if result.status is RunStatus.PARTIAL:
            print(result.failed_endpoints, result.completeness)
    """

    def __init__(
        self,
        lifecycle: TokenLifecycleManager,
        transport: ReportTransport,
        limiter: SlidingWindowRateLimiter,
        *,
        retry_policy: RetryPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        request_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.lifecycle = lifecycle
        self.transport = transport
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.classifier = classifier or lifecycle.classifier
        self.request_timeout = request_timeout
        self._sleep = sleep

    async def run_fetch(
        self,
        owner_id: str,
        requests: Iterable[FetchRequest],
        *,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> AggregateResult:
        """Fetch every request and aggregate the outcomes.

        Args:
            owner_id: Whose credential to use.
            requests: Independent requests; names must be unique.
            timeout: Deadline for the whole run. On expiry every in-flight
                request is cancelled and ``asyncio.TimeoutError`` is raised.
            on_progress: Called after each request settles.
        """
        batch = list(requests)
        names = [r.name for r in batch]
        if len(set(names)) != len(names):
            raise ValueError("FetchRequest names must be unique within a run")

        if timeout is None:
            return await self._run(owner_id, batch, on_progress)
        return await asyncio.wait_for(self._run(owner_id, batch, on_progress), timeout)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(
        self,
        owner_id: str,
        batch: list[FetchRequest],
        on_progress: ProgressCallback | None,
    ) -> AggregateResult:
        if not await self.lifecycle.validate_and_refresh_if_needed(owner_id):
            logger.warning("No usable token for owner %s; fetch aborted", owner_id)
            return AggregateResult(
                owner_id=owner_id,
                status=RunStatus.REAUTH_REQUIRED,
                requested=len(batch),
                reason="no valid QuickBooks token",
            )

        run = _RunState(owner_id=owner_id, total=len(batch))
        # Stable sort: equal priorities keep caller order
        ordered = sorted(batch, key=lambda r: -r.priority)
        tasks = [asyncio.ensure_future(self._fetch_one(run, request)) for request in ordered]
        outcomes: dict[str, EndpointOutcome] = {}

        logger.info("Fetching %d request(s) for owner %s", len(batch), owner_id)
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task.cancelled():
                        continue
                    outcome = task.result()
                    outcomes[outcome.name] = outcome
                    run.completed += 1
                    self._notify(on_progress, run, outcome)

                if run.reauth_required and pending:
                    for task in pending:
                        task.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    pending = set()
        finally:
            leftover = [t for t in tasks if not t.done()]
            for task in leftover:
                task.cancel()
            if leftover:
                await asyncio.gather(*leftover, return_exceptions=True)

        # Keep the caller's ordering in the result
        ordered_outcomes = {r.name: outcomes[r.name] for r in batch if r.name in outcomes}

        if run.reauth_required:
            status = RunStatus.REAUTH_REQUIRED
        elif all(o.success for o in ordered_outcomes.values()) and len(ordered_outcomes) == len(batch):
            status = RunStatus.COMPLETE
        else:
            status = RunStatus.PARTIAL

        result = AggregateResult(
            owner_id=owner_id,
            status=status,
            outcomes=ordered_outcomes,
            requested=len(batch),
            reason=run.reason,
        )
        logger.info(
            "Fetch for owner %s finished: %s (%.0f%% complete)",
            owner_id,
            status.value,
            result.completeness * 100,
        )
        return result

    # ------------------------------------------------------------------
    # Single request
    # ------------------------------------------------------------------

    async def _call(self, request: FetchRequest, token: TokenRecord) -> Any:
        if self.request_timeout is None:
            return await self.transport.fetch(request, token)
        return await asyncio.wait_for(self.transport.fetch(request, token), self.request_timeout)

    async def _fetch_one(self, run: _RunState, request: FetchRequest) -> EndpointOutcome:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.limiter.reserve() as grant:
                    # Re-read the token after every wait; it may have been refreshed or cleared
                    token = await self.lifecycle.get_valid_token(run.owner_id)
                    grant.mark_started()
                    payload = await self._call(request, token)
                return EndpointOutcome(
                    name=request.name,
                    endpoint=request.endpoint,
                    success=True,
                    payload=payload,
                    attempts=attempt,
                )
            except Exception as e:
                classification = self.classifier.classify(e, CallSite.FETCH)

            if classification.invalidates_token:
                await self._invalidate(run, classification)
                return self._failure(request, classification, attempt)

            if self.retry_policy.should_retry(classification, attempt):
                delay = self.retry_policy.get_delay(attempt, classification)
                logger.warning(
                    "Retryable error for %s (%s), attempt %d/%d, retrying in %.2fs",
                    request.name,
                    classification.kind.value,
                    attempt,
                    self.retry_policy.max_attempts,
                    delay,
                )
                await self._sleep(delay)
                continue

            if classification.action is RecoveryAction.REPORT_CONFIG_ISSUE:
                # Stored token stays; only the client identity needs fixing
                logger.error(
                    "QuickBooks client configuration rejected for %s: %s",
                    request.name,
                    classification.message,
                )
            elif classification.retryable:
                logger.error(
                    "Max retries exhausted for %s: %s",
                    request.name,
                    classification.message,
                )
            else:
                logger.warning(
                    "Permanent error for %s, not retrying: %s",
                    request.name,
                    classification.message,
                )
            return self._failure(request, classification, attempt)

    async def _invalidate(self, run: _RunState, classification: Classification) -> None:
        # Only the first failing request clears; the flag is set before any await
        if run.reauth_required:
            return
        run.reauth_required = True
        run.reason = classification.message
        logger.warning(
            "Credential for owner %s invalidated mid-run (%s); clearing token",
            run.owner_id,
            classification.kind.value,
        )
        await self.lifecycle.clear(run.owner_id)

    @staticmethod
    def _failure(request: FetchRequest, classification: Classification, attempts: int) -> EndpointOutcome:
        return EndpointOutcome(
            name=request.name,
            endpoint=request.endpoint,
            success=False,
            error=classification,
            attempts=attempts,
        )

    @staticmethod
    def _notify(on_progress: ProgressCallback | None, run: _RunState, outcome: EndpointOutcome) -> None:
        if on_progress is None:
            return
        progress = FetchProgress(
            completed=run.completed,
            total=run.total,
            current=outcome.name,
            error=outcome.error.message if outcome.error else None,
        )
        try:
            on_progress(progress)
        except Exception as cb_err:
            logger.warning("Error in progress callback: %s", str(cb_err)[:100])
