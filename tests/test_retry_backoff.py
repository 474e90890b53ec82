"""Tests for the retry controller: backoff, Retry-After, 401 refresh."""

import asyncio
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from unittest.mock import AsyncMock

import pytest

from openturn.config import RetryConfig
from openturn.errors import (
    APIStatusError,
    CredentialResolutionError,
    MaxRetriesExceededError,
    RateLimitedError,
    ServerError,
    TransportError,
    TurnCancelledError,
    UnauthorizedError,
)
from openturn.llm.retry import RetryController, parse_retry_after


def _status(cls, code, retry_after=None):
    return cls("boom", status_code=code, retry_after=retry_after)


@pytest.fixture
def controller():
    return RetryController(RetryConfig(), base_url="https://api.openai.com/v1")


# ---------------------------------------------------------------------------
# Retry-After parsing
# ---------------------------------------------------------------------------

class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("3") == 3000
        assert parse_retry_after("0.5") == 500
        assert parse_retry_after(" 0 ") == 0

    def test_http_date(self):
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=10), usegmt=True)
        assert parse_retry_after(header, now=now) == 10000

    def test_http_date_in_past_is_zero(self):
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        header = format_datetime(now - timedelta(seconds=10), usegmt=True)
        assert parse_retry_after(header, now=now) == 0

    def test_garbage(self):
        assert parse_retry_after("soon") is None
        assert parse_retry_after("") is None
        assert parse_retry_after("-1") is None
        assert parse_retry_after("inf") is None
        assert parse_retry_after("nan") is None


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

class TestBackoff:
    @pytest.mark.parametrize("attempt", [1, 2, 3, 4])
    def test_delay_bounds(self, attempt):
        base = 2000 * 2 ** (attempt - 1)
        low = RetryController(RetryConfig(), rng=lambda: 0.0)
        high = RetryController(RetryConfig(), rng=lambda: 0.999999)
        assert low.backoff_ms(attempt) == base
        assert base <= high.backoff_ms(attempt) <= base * 1.2

    async def test_server_error_uses_backoff(self, controller):
        decision = await controller.decide(2, _status(ServerError, 500))
        assert decision.should_retry
        assert 4000 <= decision.delay_ms <= 4800
        assert decision.error is None

    async def test_transport_error_retries(self, controller):
        decision = await controller.decide(1, TransportError("connection reset"))
        assert decision.should_retry
        assert 2000 <= decision.delay_ms <= 2400

    async def test_retry_after_overrides_backoff(self, controller):
        decision = await controller.decide(1, _status(RateLimitedError, 429, ["7"]))
        assert decision.should_retry
        assert decision.delay_ms == 7000

    async def test_unparseable_retry_after_falls_back(self, controller):
        decision = await controller.decide(1, _status(RateLimitedError, 429, ["later"]))
        assert decision.should_retry
        assert 2000 <= decision.delay_ms <= 2400


# ---------------------------------------------------------------------------
# Terminal decisions
# ---------------------------------------------------------------------------

class TestTerminal:
    async def test_max_retries(self):
        ctl = RetryController(RetryConfig(max_retries=2))
        last = _status(ServerError, 500)
        decision = await ctl.decide(3, last)
        assert not decision.should_retry
        assert isinstance(decision.error, MaxRetriesExceededError)
        assert decision.error.last_error is last
        assert "maximum retry attempts reached" in str(decision.error)

    async def test_ceiling_itself_still_retries(self):
        ctl = RetryController(RetryConfig(max_retries=2))
        decision = await ctl.decide(2, _status(ServerError, 500))
        assert decision.should_retry

    async def test_cancellation_propagates(self, controller):
        cancelled = asyncio.CancelledError()
        decision = await controller.decide(1, cancelled)
        assert not decision.should_retry
        assert decision.error is cancelled

        turn_cancelled = TurnCancelledError("cancelled")
        decision = await controller.decide(1, turn_cancelled)
        assert decision.error is turn_cancelled

    async def test_deadline_propagates(self, controller):
        deadline = TimeoutError()
        decision = await controller.decide(1, deadline)
        assert not decision.should_retry
        assert decision.error is deadline

    async def test_bad_request_is_terminal(self, controller):
        err = _status(APIStatusError, 400)
        decision = await controller.decide(1, err)
        assert not decision.should_retry
        assert decision.error is err
        assert err.attempt == 1

    async def test_502_is_terminal(self, controller):
        decision = await controller.decide(1, _status(ServerError, 502))
        assert not decision.should_retry

    async def test_local_429_stops_quietly(self):
        ctl = RetryController(RetryConfig(), base_url="http://localhost:1234/v1")
        decision = await ctl.decide(1, _status(RateLimitedError, 429))
        assert not decision.should_retry
        assert decision.delay_ms == 0
        assert decision.error is None


# ---------------------------------------------------------------------------
# 401 credential refresh
# ---------------------------------------------------------------------------

class TestUnauthorized:
    async def test_refresh_once(self):
        refresh = AsyncMock()
        ctl = RetryController(RetryConfig(), refresh_credentials=refresh)

        first = await ctl.decide(1, _status(UnauthorizedError, 401))
        assert first.should_retry
        assert first.delay_ms == 0
        refresh.assert_awaited_once()

        second_err = _status(UnauthorizedError, 401)
        second = await ctl.decide(2, second_err)
        assert not second.should_retry
        assert second.error is second_err
        assert refresh.await_count == 1

    async def test_no_refresher_is_terminal(self, controller):
        decision = await controller.decide(1, _status(UnauthorizedError, 401))
        assert not decision.should_retry
        assert isinstance(decision.error, UnauthorizedError)

    async def test_refresh_failure(self):
        refresh = AsyncMock(side_effect=CredentialResolutionError("OPENAI_API_KEY is not set"))
        ctl = RetryController(RetryConfig(), refresh_credentials=refresh)
        decision = await ctl.decide(1, _status(UnauthorizedError, 401))
        assert not decision.should_retry
        assert isinstance(decision.error, CredentialResolutionError)
        assert "failed to resolve API key" in str(decision.error)
