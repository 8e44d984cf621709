"""
Unit Tests for the Credential Manager

Reliability Level: L6 Critical

Tests:
- Concurrent ensure() calls share exactly one refresh
- A held token inside its lifetime needs no I/O
- A fresher page token is adopted without refreshing
- Refresh failures are reported to every waiter
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.transport.credential_manager import CredentialManager, IssuedToken
from app.transport.errors import AuthenticationError
from tests.fakes import T0, FakeTokenSource


class FakeClock:

    def __init__(self, now: float = float(T0)) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _manager(source: FakeTokenSource, clock: FakeClock) -> CredentialManager:
    return CredentialManager(source, lifetime_seconds=900, refresh_margin_seconds=60, clock=clock)


class TestSingleFlightRefresh:

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self) -> None:
        clock = FakeClock()
        source = FakeTokenSource(clock=clock)
        source.gate = asyncio.Event()
        manager = _manager(source, clock)

        waiters = [asyncio.ensure_future(manager.ensure()) for _ in range(10)]
        await asyncio.sleep(0)
        source.gate.set()
        results = await asyncio.gather(*waiters)

        assert results == [True] * 10
        assert source.refresh_calls == 1
        assert manager.refresh_count == 1
        assert manager.auth_headers() == {"Authorization": "Bearer tok-1"}

    @pytest.mark.asyncio
    async def test_valid_token_skips_refresh(self) -> None:
        clock = FakeClock()
        source = FakeTokenSource(clock=clock)
        manager = _manager(source, clock)

        await manager.ensure()
        clock.now += 600
        await manager.ensure()

        assert source.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_refresh_inside_margin(self) -> None:
        clock = FakeClock()
        source = FakeTokenSource(clock=clock)
        manager = _manager(source, clock)

        await manager.ensure()
        clock.now += 850
        await manager.ensure()

        assert source.refresh_calls == 2
        assert manager.token == "tok-2"

    @pytest.mark.asyncio
    async def test_failure_is_shared_and_recorded(self) -> None:
        clock = FakeClock()
        source = FakeTokenSource(clock=clock)
        source.fail_with = AuthenticationError("auth service down")
        source.gate = asyncio.Event()
        manager = _manager(source, clock)

        waiters = [asyncio.ensure_future(manager.ensure()) for _ in range(3)]
        await asyncio.sleep(0)
        source.gate.set()
        results = await asyncio.gather(*waiters)

        assert results == [False, False, False]
        assert source.refresh_calls == 1
        assert "auth service down" in manager.last_error
        assert manager.auth_headers() == {}


class TestPageToken:

    @pytest.mark.asyncio
    async def test_fresher_page_token_is_adopted(self) -> None:
        clock = FakeClock()
        source = FakeTokenSource(clock=clock)
        source.page_token = IssuedToken(token="page-token", issued_at=clock.now - 10)
        manager = _manager(source, clock)

        assert await manager.ensure() is True

        assert source.refresh_calls == 0
        assert manager.token == "page-token"

    @pytest.mark.asyncio
    async def test_expired_page_token_is_ignored(self) -> None:
        clock = FakeClock()
        source = FakeTokenSource(clock=clock)
        source.page_token = IssuedToken(token="old", issued_at=clock.now - 2000)
        manager = _manager(source, clock)

        await manager.ensure()

        assert source.refresh_calls == 1
        assert manager.token == "tok-1"

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self) -> None:
        clock = FakeClock()
        source = FakeTokenSource(clock=clock)
        manager = _manager(source, clock)

        await manager.ensure()
        manager.invalidate()
        await manager.ensure()

        assert source.refresh_calls == 2

    def test_rejects_non_positive_lifetime(self) -> None:
        with pytest.raises(ValueError):
            CredentialManager(FakeTokenSource(), lifetime_seconds=0)
