"""Shared fixtures and fakes for the qbolink test suite."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from qbolink.clock import DeterministicClock
from qbolink.models.fetch import FetchRequest
from qbolink.models.token import TokenGrant, TokenRecord


class FakeTime:
    """Monotonic time source whose sleep jumps the clock forward."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeTokenClient:
    """Stands in for :class:`OAuthTokenClient` without any HTTP."""

    def __init__(self, *, delay: float = 0.0, error: BaseException | None = None) -> None:
        self.delay = delay
        self.error = error
        self.refresh_calls = 0
        self.exchange_calls = 0

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return TokenGrant(
            access_token=f"access-{self.refresh_calls}",
            refresh_token=f"refresh-{self.refresh_calls}",
            expires_in=3600,
        )

    async def exchange_code(self, code: str, redirect_uri: str, *, code_verifier: str | None = None) -> TokenGrant:
        self.exchange_calls += 1
        if self.error is not None:
            raise self.error
        return TokenGrant(access_token=f"access-{code}", refresh_token=f"refresh-{code}", expires_in=3600)

    def get_authorization_url(self, redirect_uri: str, state: str = "", **kwargs: Any) -> str:
        return f"https://auth.example/authorize?redirect_uri={redirect_uri}&state={state}"

    async def close(self) -> None:
        pass


class FakeTransport:
    """Report transport driven by a per-request-name script.

    ``script[name]`` is a list of results consumed one per attempt; an
    exception instance is raised, anything else is returned. Names without
    a script succeed with ``{"name": name}``.
    """

    def __init__(self, script: dict[str, list[Any]] | None = None, *, delay: float = 0.0) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.calls: list[str] = []
        self.tokens_seen: list[str] = []

    async def fetch(self, request: FetchRequest, token: TokenRecord) -> Any:
        self.calls.append(request.name)
        self.tokens_seen.append(token.access_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        steps = self.script.get(request.name)
        if steps:
            step = steps.pop(0) if len(steps) > 1 else steps[0]
            if isinstance(step, BaseException):
                raise step
            return step
        return {"name": request.name}

    async def close(self) -> None:
        pass


def make_record(
    clock: DeterministicClock,
    *,
    owner_id: str = "user_1",
    realm_id: str = "realm_1",
    expires_in: float = 3600,
    access_token: str = "access-0",
    refresh_token: str = "refresh-0",
) -> TokenRecord:
    now = clock.now()
    return TokenRecord(
        owner_id=owner_id,
        realm_id=realm_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + timedelta(seconds=expires_in),
        created_at=now,
        updated_at=now,
    )


async def no_sleep(seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock()


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()
