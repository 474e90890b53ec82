"""Retry policy for chat-completion attempts.

Adapted from the ``ErrorClassifier`` idea: every failure is classified
locally and turned into a ``RetryDecision``.  Nothing is surfaced to the
caller unless the decision is terminal.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable

from openturn.config import RetryConfig
from openturn.errors import (
    APIStatusError,
    CredentialResolutionError,
    MaxRetriesExceededError,
    ProviderError,
    TurnCancelledError,
)
from openturn.types import RetryDecision

from .vendors import is_local_endpoint

_logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = (429, 500)

CredentialRefresher = Callable[[], Awaitable[None]]


def parse_retry_after(value: str, now: datetime | None = None) -> int | None:
    """Parse a ``Retry-After`` value into milliseconds.

    Accepts non-negative (possibly fractional) seconds or an HTTP-date.
    Returns ``None`` for anything else so the caller keeps its own backoff.
    """
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        if seconds < 0 or not math.isfinite(seconds):
            return None
        return int(seconds * 1000)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0, int((when - now).total_seconds() * 1000))


class RetryController:
    """Decide whether a failed attempt is retried, and after how long.

    One controller belongs to one run; it remembers whether the credential
    has already been refreshed so a second 401 ends the run.

    Parameters
    ----------
    config:
        Attempt ceiling, backoff base and jitter.
    base_url:
        Endpoint URL, used for the local-endpoint 429 heuristic.
    refresh_credentials:
        Coroutine function that re-resolves the API key and rebuilds the
        transport.  ``None`` disables the 401 path.
    """

    def __init__(
        self,
        config: RetryConfig,
        base_url: str = "",
        refresh_credentials: CredentialRefresher | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config
        self.base_url = base_url
        self._refresh = refresh_credentials
        self._rng = rng
        self._refreshed = False

    def backoff_ms(self, attempt: int) -> int:
        """``base * 2^(attempt-1)`` plus up to ``jitter`` of that."""
        backoff = self.config.base_delay_ms * (1 << max(0, attempt - 1))
        return backoff + int(backoff * self.config.jitter * self._rng())

    async def decide(self, attempt: int, error: BaseException) -> RetryDecision:
        max_retries = self.config.max_retries
        if attempt > max_retries:
            _logger.error(
                "Giving up after attempt %d/%d: %s", attempt, max_retries, error,
            )
            return RetryDecision(
                False, 0, MaxRetriesExceededError(max_retries, error, attempt=attempt),
            )

        if isinstance(error, (asyncio.CancelledError, TurnCancelledError, TimeoutError)):
            return RetryDecision(False, 0, error)

        retry_after: list[str] = []
        if isinstance(error, APIStatusError):
            status = error.status_code

            if status == 401:
                return await self._after_unauthorized(attempt, error)

            if status == 429 and is_local_endpoint(
                self.base_url, self.config.local_endpoint_markers,
            ):
                # Local servers send 429 spuriously; stop without an error
                _logger.warning(
                    "Local endpoint returned 429 (attempt %d/%d), not retrying",
                    attempt, max_retries,
                )
                return RetryDecision(False, 0, None)

            if status not in _RETRYABLE_STATUS:
                error.attempt = attempt
                _logger.error(
                    "API error %d (attempt %d/%d) is not retryable: %s",
                    status, attempt, max_retries, error.message,
                )
                return RetryDecision(False, 0, error)

            retry_after = error.retry_after
            _logger.warning(
                "API error %d (attempt %d/%d): %s",
                status, attempt, max_retries, error.message,
            )
            if retry_after:
                _logger.warning("Retry-After header: %s", retry_after)
        else:
            _logger.warning(
                "Request failed (attempt %d/%d): %s", attempt, max_retries, error,
            )

        delay = self.backoff_ms(attempt)
        if retry_after:
            parsed = parse_retry_after(retry_after[0])
            if parsed is not None:
                delay = parsed
        return RetryDecision(True, delay, None)

    async def _after_unauthorized(
        self, attempt: int, error: APIStatusError,
    ) -> RetryDecision:
        if self._refresh is None or self._refreshed:
            error.attempt = attempt
            _logger.error(
                "Unauthorized (attempt %d/%d) after credential refresh",
                attempt, self.config.max_retries,
            )
            return RetryDecision(False, 0, error)
        self._refreshed = True
        try:
            await self._refresh()
        except ProviderError as e:
            return RetryDecision(
                False, 0,
                CredentialResolutionError(
                    f"failed to resolve API key: {e.message}", attempt=attempt,
                ),
            )
        _logger.warning(
            "Unauthorized (attempt %d/%d); credentials refreshed, retrying",
            attempt, self.config.max_retries,
        )
        return RetryDecision(True, 0, None)
