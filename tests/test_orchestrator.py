"""Tests for the fetch orchestrator."""

from __future__ import annotations

import asyncio
import copy
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import FakeTokenClient, FakeTransport, make_record, no_sleep
from qbolink.auth.lifecycle import TokenLifecycleManager
from qbolink.auth.store import MemoryTokenStore
from qbolink.clock import DeterministicClock
from qbolink.errors import ErrorKind
from qbolink.exceptions import ProviderHTTPError
from qbolink.models.fetch import FetchProgress, FetchRequest, RunStatus
from qbolink.orchestrator import FetchOrchestrator
from qbolink.resilience.rate_limiter import SlidingWindowRateLimiter
from qbolink.resilience.retry import RetryPolicy


def _requests(n: int) -> list[FetchRequest]:
    return [FetchRequest(f"reports/R{i:02d}", name=f"r{i:02d}") for i in range(n)]


async def _orchestrator(
    clock: DeterministicClock,
    transport,  # noqa: ANN001
    *,
    limiter: SlidingWindowRateLimiter | None = None,
    sleep=no_sleep,  # noqa: ANN001
    with_token: bool = True,
    token_client: FakeTokenClient | None = None,
) -> tuple[FetchOrchestrator, MemoryTokenStore]:
    store = MemoryTokenStore()
    if with_token:
        await store.replace_atomically("user_1", make_record(clock))
    lifecycle = TokenLifecycleManager(store, token_client or FakeTokenClient(), clock=clock)
    orchestrator = FetchOrchestrator(
        lifecycle,
        transport,
        limiter or SlidingWindowRateLimiter(450, 60),
        retry_policy=RetryPolicy(max_attempts=3, jitter=False),
        sleep=sleep,
    )
    return orchestrator, store


class SlowTransport:
    """Every call hangs; names in ``fail`` answer 401 immediately."""

    def __init__(self, fail: set[str] | None = None, delay: float = 10.0) -> None:
        self.fail = fail or set()
        self.delay = delay
        self.calls: list[str] = []

    async def fetch(self, request: FetchRequest, token) -> dict:  # noqa: ANN001
        self.calls.append(request.name)
        if request.name in self.fail:
            raise ProviderHTTPError(401, "Unauthorized")
        await asyncio.sleep(self.delay)
        return {}


class ExpiringTransport:
    """First call moves the clock past the token's expiry and answers 503."""

    def __init__(self, clock: DeterministicClock) -> None:
        self.clock = clock
        self.calls = 0

    async def fetch(self, request: FetchRequest, token) -> dict:  # noqa: ANN001
        self.calls += 1
        if self.calls == 1:
            self.clock.advance(4000)
            raise ProviderHTTPError(503, "Service Unavailable")
        return {}


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class TestRunOutcomes:
    @pytest.mark.asyncio
    async def test_all_succeed(self, clock: DeterministicClock) -> None:
        transport = FakeTransport()
        orchestrator, _ = await _orchestrator(clock, transport)

        result = await orchestrator.run_fetch("user_1", _requests(5))

        assert result.status is RunStatus.COMPLETE
        assert result.completeness == 1.0
        assert result.payloads["r03"] == {"name": "r03"}
        assert all(o.attempts == 1 for o in result.outcomes.values())

    @pytest.mark.asyncio
    async def test_one_endpoint_times_out(self, clock: DeterministicClock) -> None:
        # 15 requests, one times out on every attempt
        transport = FakeTransport({"r07": [httpx.ReadTimeout("read timed out")]})
        orchestrator, _ = await _orchestrator(clock, transport)

        result = await orchestrator.run_fetch("user_1", _requests(15))

        assert result.status is RunStatus.PARTIAL
        assert result.completeness == pytest.approx(14 / 15)
        assert result.failed_endpoints == ["r07"]
        failed = result.outcomes["r07"]
        assert failed.attempts == 3
        assert failed.error.kind is ErrorKind.TIMEOUT
        assert transport.calls.count("r07") == 3

    @pytest.mark.asyncio
    async def test_partial_accounting(self, clock: DeterministicClock) -> None:
        not_found = ProviderHTTPError(404, {"message": "no such report"})
        transport = FakeTransport({name: [not_found] for name in ("r01", "r04", "r08")})
        orchestrator, _ = await _orchestrator(clock, transport)

        result = await orchestrator.run_fetch("user_1", _requests(10))

        assert result.status is RunStatus.PARTIAL
        assert len(result.successes) == 7
        assert len(result.failures) == 3
        assert result.completeness == pytest.approx(0.7)
        assert result.failed_endpoints == ["r01", "r04", "r08"]
        # Validation errors are not retried
        assert all(result.outcomes[n].attempts == 1 for n in result.failed_endpoints)

    @pytest.mark.asyncio
    async def test_retry_then_success(self, clock: DeterministicClock) -> None:
        sleeps: list[float] = []

        async def record_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        server_error = ProviderHTTPError(503, "Service Unavailable")
        transport = FakeTransport({"r00": [server_error, server_error, {"ok": True}]})
        orchestrator, _ = await _orchestrator(clock, transport, sleep=record_sleep)

        result = await orchestrator.run_fetch("user_1", _requests(1))

        assert result.status is RunStatus.COMPLETE
        assert result.outcomes["r00"].payload == {"ok": True}
        assert result.outcomes["r00"].attempts == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_requests_are_not_mutated(self, clock: DeterministicClock) -> None:
        transport = FakeTransport({"r00": [ProviderHTTPError(503), {"ok": True}]})
        orchestrator, _ = await _orchestrator(clock, transport)
        requests = _requests(1)
        snapshot = copy.deepcopy(requests)

        first = await orchestrator.run_fetch("user_1", requests)
        second = await orchestrator.run_fetch("user_1", requests)

        assert requests == snapshot
        assert first.outcomes["r00"].attempts == 2
        assert second.outcomes["r00"].attempts == 1

    @pytest.mark.asyncio
    async def test_empty_run_is_complete(self, clock: DeterministicClock) -> None:
        orchestrator, _ = await _orchestrator(clock, FakeTransport())
        result = await orchestrator.run_fetch("user_1", [])
        assert result.status is RunStatus.COMPLETE
        assert result.completeness == 1.0

    @pytest.mark.asyncio
    async def test_duplicate_names_rejected(self, clock: DeterministicClock) -> None:
        orchestrator, _ = await _orchestrator(clock, FakeTransport())
        with pytest.raises(ValueError):
            await orchestrator.run_fetch("user_1", [FetchRequest("query"), FetchRequest("query")])

    @pytest.mark.asyncio
    async def test_outcomes_keep_caller_order(self, clock: DeterministicClock) -> None:
        orchestrator, _ = await _orchestrator(clock, FakeTransport())
        requests = [FetchRequest("a", priority=0), FetchRequest("b", priority=9)]
        result = await orchestrator.run_fetch("user_1", requests)
        assert list(result.outcomes) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_higher_priority_dispatched_first(self, clock: DeterministicClock) -> None:
        transport = FakeTransport()
        orchestrator, _ = await _orchestrator(clock, transport)
        requests = [
            FetchRequest("low", priority=0),
            FetchRequest("high", priority=10),
            FetchRequest("mid", priority=5),
        ]
        await orchestrator.run_fetch("user_1", requests)
        assert transport.calls == ["high", "mid", "low"]


# ---------------------------------------------------------------------------
# Credential handling
# ---------------------------------------------------------------------------


class TestReauth:
    @pytest.mark.asyncio
    async def test_no_token_makes_no_attempts(self, clock: DeterministicClock) -> None:
        transport = FakeTransport()
        orchestrator, _ = await _orchestrator(clock, transport, with_token=False)

        result = await orchestrator.run_fetch("user_1", _requests(3))

        assert result.status is RunStatus.REAUTH_REQUIRED
        assert result.outcomes == {}
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_401_mid_run_clears_once_and_cancels(self, clock: DeterministicClock) -> None:
        transport = SlowTransport(fail={"r02", "r05"})
        orchestrator, store = await _orchestrator(clock, transport)
        store.delete_all = AsyncMock(wraps=store.delete_all)

        result = await asyncio.wait_for(orchestrator.run_fetch("user_1", _requests(8)), timeout=5)

        assert result.status is RunStatus.REAUTH_REQUIRED
        assert result.reauth_required
        assert store.delete_all.await_count == 1
        assert await store.get_active("user_1") is None
        # The hanging requests were cancelled rather than awaited
        assert not result.successes

    @pytest.mark.asyncio
    async def test_config_error_mid_run_keeps_token(self, clock: DeterministicClock) -> None:
        client = FakeTokenClient(error=ProviderHTTPError(401, {"error": "invalid_client"}))
        transport = ExpiringTransport(clock)
        orchestrator, store = await _orchestrator(clock, transport, token_client=client)
        store.delete_all = AsyncMock(wraps=store.delete_all)

        result = await orchestrator.run_fetch("user_1", [FetchRequest("reports/ProfitAndLoss", name="pnl")])

        assert result.status is RunStatus.PARTIAL
        outcome = result.outcomes["pnl"]
        assert outcome.error.kind is ErrorKind.AUTH_CONFIG_ERROR
        assert outcome.attempts == 2
        assert client.refresh_calls == 1
        assert transport.calls == 1
        store.delete_all.assert_not_awaited()
        assert await store.get_active("user_1") is not None

    @pytest.mark.asyncio
    async def test_token_revalidated_per_attempt(self, clock: DeterministicClock) -> None:
        transport = FakeTransport()
        orchestrator, store = await _orchestrator(clock, transport)
        await orchestrator.run_fetch("user_1", _requests(1))

        await store.replace_atomically("user_1", make_record(clock, access_token="rotated"))
        await orchestrator.run_fetch("user_1", [FetchRequest("again")])

        assert transport.tokens_seen == ["access-0", "rotated"]


# ---------------------------------------------------------------------------
# Cancellation, rate limiting and progress
# ---------------------------------------------------------------------------


class TestRunControl:
    @pytest.mark.asyncio
    async def test_timeout_cancels_in_flight_work(self, clock: DeterministicClock) -> None:
        limiter = SlidingWindowRateLimiter(2, 60)
        transport = SlowTransport()
        orchestrator, _ = await _orchestrator(clock, transport, limiter=limiter)

        with pytest.raises(asyncio.TimeoutError):
            await orchestrator.run_fetch("user_1", _requests(5), timeout=0.1)

        # Only the two calls that actually started hold slots
        assert len(transport.calls) == 2
        assert limiter.in_window() == 2

    @pytest.mark.asyncio
    async def test_all_requests_share_the_limiter(self, clock: DeterministicClock, fake_time) -> None:
        limiter = SlidingWindowRateLimiter(3, 1.0, clock=fake_time, sleep=fake_time.sleep)
        orchestrator, _ = await _orchestrator(clock, FakeTransport(), limiter=limiter)

        result = await orchestrator.run_fetch("user_1", _requests(7))

        assert result.status is RunStatus.COMPLETE
        assert limiter.get_stats()["total_granted"] == 7
        assert limiter.get_stats()["total_waits"] > 0

    @pytest.mark.asyncio
    async def test_progress_callback(self, clock: DeterministicClock) -> None:
        seen: list[FetchProgress] = []
        transport = FakeTransport({"r01": [ProviderHTTPError(404)]})
        orchestrator, _ = await _orchestrator(clock, transport)

        await orchestrator.run_fetch("user_1", _requests(3), on_progress=seen.append)

        assert [p.completed for p in seen] == [1, 2, 3]
        assert seen[-1].percentage == 100.0
        assert any(p.current == "r01" and p.error for p in seen)

    @pytest.mark.asyncio
    async def test_failing_progress_callback_is_ignored(self, clock: DeterministicClock) -> None:
        def explode(progress: FetchProgress) -> None:
            raise RuntimeError("ui went away")

        orchestrator, _ = await _orchestrator(clock, FakeTransport())
        result = await orchestrator.run_fetch("user_1", _requests(2), on_progress=explode)
        assert result.status is RunStatus.COMPLETE
