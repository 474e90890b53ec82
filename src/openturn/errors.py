"""Error hierarchy for provider calls and its mapping from httpx errors."""

from __future__ import annotations

import json

import httpx


class ProviderError(Exception):
    """Base class for failures surfaced by an aggregation run.

    ``attempt`` is filled in when the error becomes terminal so the caller
    can tell how far the run got.
    """

    def __init__(self, message: str, *, attempt: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.attempt = attempt

    def __str__(self) -> str:
        if self.attempt is not None:
            return f"{self.message} (attempt {self.attempt})"
        return self.message


class TransportError(ProviderError):
    """Network or IO failure before or during the stream."""


class APIStatusError(ProviderError):
    """The endpoint answered with an HTTP error status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        retry_after: list[str] | None = None,
        body: str = "",
        attempt: int | None = None,
    ) -> None:
        super().__init__(message, attempt=attempt)
        self.status_code = status_code
        self.retry_after = list(retry_after or [])
        self.body = body

    def __str__(self) -> str:
        text = f"HTTP {self.status_code}: {self.message}"
        if self.attempt is not None:
            text += f" (attempt {self.attempt})"
        return text


class RateLimitedError(APIStatusError):
    """HTTP 429."""


class UnauthorizedError(APIStatusError):
    """HTTP 401: the credential is missing or expired."""


class ServerError(APIStatusError):
    """HTTP 5xx."""


class EmptyResponseError(ProviderError):
    """The endpoint completed without producing a single choice."""


class MaxRetriesExceededError(ProviderError):
    """The attempt ceiling was reached."""

    def __init__(
        self,
        max_retries: int,
        last_error: BaseException | None = None,
        *,
        attempt: int | None = None,
    ) -> None:
        message = f"maximum retry attempts reached: {max_retries} retries"
        if last_error is not None:
            message += f"; last error: {last_error}"
        super().__init__(message, attempt=attempt)
        self.max_retries = max_retries
        self.last_error = last_error


class TurnCancelledError(ProviderError):
    """The caller cancelled the run."""


class CredentialResolutionError(ProviderError):
    """An API key reference could not be resolved."""


class MalformedToolCallArgumentsError(ProviderError):
    """Tool call arguments are not a JSON object."""


class ToolCallFinishedError(ProviderError):
    """Attempt to mutate a tool call that is already finished."""


# ---------------------------------------------------------------------------
# httpx mapping
# ---------------------------------------------------------------------------

def status_error(
    message: str,
    status_code: int,
    retry_after: list[str] | None = None,
    body: str = "",
) -> APIStatusError:
    """Build the ``APIStatusError`` subclass that matches *status_code*."""
    if status_code == 401:
        cls: type[APIStatusError] = UnauthorizedError
    elif status_code == 429:
        cls = RateLimitedError
    elif status_code >= 500:
        cls = ServerError
    else:
        cls = APIStatusError
    return cls(message, status_code=status_code, retry_after=retry_after, body=body)


def _error_message(response: httpx.Response, body: str) -> str:
    try:
        data = json.loads(body) if body else None
    except json.JSONDecodeError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return body.strip()[:500] or response.reason_phrase or "request failed"


def from_http_error(exc: httpx.HTTPStatusError) -> APIStatusError:
    """Classify an ``httpx.HTTPStatusError`` into the hierarchy above.

    The response body must already be read (streamed responses need
    ``aread()`` first); an unread body is treated as empty.
    """
    response = exc.response
    try:
        body = response.text
    except httpx.ResponseNotRead:
        body = ""
    return status_error(
        _error_message(response, body),
        response.status_code,
        retry_after=response.headers.get_list("retry-after"),
        body=body,
    )
