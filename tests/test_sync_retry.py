"""Tests for the bounded transport backoff and the consistency wait."""

from __future__ import annotations

import httpx
import pytest

from src.crmsync.config import Settings
from src.crmsync.sync.errors import ExternalAPIError, RateLimitError
from src.crmsync.sync.retry import BackoffPolicy, ConsistencyWait


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestConsistencyWait:
    @pytest.mark.asyncio
    async def test_returns_first_hit_without_sleeping(self):
        sleeps = _Sleeps()
        wait = ConsistencyWait(attempts=3, delay=1.0, sleep=sleeps)

        async def lookup():
            return "found"

        assert await wait.wait_for(lookup, description="organization") == "found"
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_polls_until_counterpart_appears(self):
        """A record written by a concurrent webhook is picked up on a later attempt."""
        sleeps = _Sleeps()
        wait = ConsistencyWait(attempts=3, delay=2.0, sleep=sleeps)
        results = iter([None, None, "late"])

        async def lookup():
            return next(results)

        assert await wait.wait_for(lookup, description="organization") == "late"
        assert sleeps.delays == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_with_none(self):
        """After the attempt ceiling the caller gets None instead of an exception."""
        sleeps = _Sleeps()
        wait = ConsistencyWait(attempts=3, delay=1.0, sleep=sleeps)
        calls = []

        async def lookup():
            calls.append(1)
            return None

        assert await wait.wait_for(lookup, description="deal") is None
        assert len(calls) == 3
        assert len(sleeps.delays) == 2

    @pytest.mark.asyncio
    async def test_lookup_errors_propagate(self):
        wait = ConsistencyWait(attempts=3, delay=1.0, sleep=_Sleeps())

        async def lookup():
            raise RuntimeError("database down")

        with pytest.raises(RuntimeError):
            await wait.wait_for(lookup, description="deal")

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            ConsistencyWait(attempts=0)

    def test_from_settings(self):
        settings = Settings(CONSISTENCY_WAIT_ATTEMPTS=5, CONSISTENCY_WAIT_DELAY_SECONDS=0.25)
        wait = ConsistencyWait.from_settings(settings)
        assert wait.attempts == 5
        assert wait.delay == 0.25


class TestBackoffPolicy:
    @pytest.mark.asyncio
    async def test_rate_limit_retried_then_succeeds(self):
        sleeps = _Sleeps()
        policy = BackoffPolicy(max_attempts=4, base_delay=1.0, max_delay=8.0)
        attempts = []

        async def call():
            attempts.append(1)
            if len(attempts) < 3:
                raise RateLimitError("hubspot", 429, "slow down")
            return "ok"

        assert await policy.retrying(sleeps)(call) == "ok"
        assert len(attempts) == 3
        assert len(sleeps.delays) == 2
        assert sleeps.delays == sorted(sleeps.delays)

    @pytest.mark.asyncio
    async def test_ceiling_reraises_last_error(self):
        """Persistent 429s surface as RateLimitError once attempts run out."""
        sleeps = _Sleeps()
        policy = BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=8.0)
        attempts = []

        async def call():
            attempts.append(1)
            raise RateLimitError("rentman", 429, "slow down")

        with pytest.raises(RateLimitError):
            await policy.retrying(sleeps)(call)
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        policy = BackoffPolicy(max_attempts=5)
        attempts = []

        async def call():
            attempts.append(1)
            raise ExternalAPIError("hubspot", 400, "bad request")

        with pytest.raises(ExternalAPIError):
            await policy.retrying(_Sleeps())(call)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_timeout_retried_only_when_idempotent(self):
        policy = BackoffPolicy(max_attempts=3, base_delay=1.0, max_delay=2.0)
        attempts = []

        async def call():
            attempts.append(1)
            raise httpx.ReadTimeout("timed out")

        with pytest.raises(httpx.TimeoutException):
            await policy.retrying(_Sleeps(), idempotent=False)(call)
        assert len(attempts) == 1

        with pytest.raises(httpx.TimeoutException):
            await policy.retrying(_Sleeps())(call)
        assert len(attempts) == 4

    def test_delays_capped(self):
        policy = BackoffPolicy(max_attempts=5, base_delay=5.0, max_delay=80.0)
        assert policy.max_delay == 80.0
        assert BackoffPolicy.from_settings(Settings(RETRY_MAX_ATTEMPTS=2)).max_attempts == 2
