"""Async client for OpenAI-compatible chat-completion endpoints.

``AsyncLLMClient.stream()`` runs one aggregation run on its own task and
hands the caller an ``EventStream``; ``AsyncLLMClient.send()`` is the
non-streaming variant.  Both share the retry policy and the turn
finalisation rules.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from typing import Any, AsyncGenerator, Awaitable, Callable

import httpx

from openturn.config import TurnConfig, resolve_value
from openturn.diagnostics import ExecutionMetrics, TurnRecorder
from openturn.errors import (
    APIStatusError,
    EmptyResponseError,
    ProviderError,
    TransportError,
    TurnCancelledError,
    from_http_error,
    status_error,
)
from openturn.types import EventType, Message, ProviderEvent, ToolSpec, Turn

from .aggregator import StreamAggregator, turn_from_completion
from .request_builder import RequestBuilder
from .retry import RetryController
from .vendors import Vendor, classify_vendor

_logger = logging.getLogger(__name__)

_CLOSED = object()  # end-of-stream marker on the event queue

Emit = Callable[[ProviderEvent], None]


# ---------------------------------------------------------------------------
# EventStream
# ---------------------------------------------------------------------------

class EventStream:
    """Events of one streaming run, consumed with ``async for``.

    The run starts on its own task at the first iteration.  The queue is
    closed exactly once, from the task's done-callback, which also runs
    when the task is cancelled before its first step.  The last event is
    always terminal (``COMPLETE`` or ``ERROR``).
    """

    def __init__(self, run: Callable[[Emit], Awaitable[None]]) -> None:
        self._run = run
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._exhausted = False
        self._terminal_sent = False

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(self._emit))
            self._task.add_done_callback(self._on_done)

    def _emit(self, event: ProviderEvent) -> None:
        if self._terminal_sent:
            _logger.debug("Dropping %s event after terminal event", event.type.value)
            return
        if event.is_terminal:
            self._terminal_sent = True
        self._queue.put_nowait(event)

    def _on_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            self._emit(ProviderEvent(
                type=EventType.ERROR, error=TurnCancelledError("turn cancelled"),
            ))
        elif task.exception() is not None:
            self._emit(ProviderEvent(type=EventType.ERROR, error=task.exception()))
        elif not self._terminal_sent:
            self._emit(ProviderEvent(
                type=EventType.ERROR,
                error=ProviderError("stream ended without a terminal event"),
            ))
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> EventStream:
        self.start()
        return self

    async def __anext__(self) -> ProviderEvent:
        if self._exhausted:
            raise StopAsyncIteration
        self.start()
        item = await self._queue.get()
        if item is _CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        return item

    def cancel(self) -> None:
        """Cancel the run; a backoff wait or in-flight request is aborted."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        self.cancel()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def collect(self) -> Turn:
        """Drain the stream and return the final turn, raising on failure."""
        async for event in self:
            if event.type == EventType.COMPLETE and event.response is not None:
                return event.response
            if event.type == EventType.ERROR:
                raise event.error or ProviderError("stream failed")
        raise ProviderError("stream closed without a terminal event")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AsyncLLMClient:
    """Client for one provider / model type pair.

    Parameters
    ----------
    config:
        Configuration snapshot.
    model_type:
        Entry of ``config.models`` to talk to.
    system_message:
        Base system prompt for every request.
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).
    recorder:
        Optional ``TurnRecorder`` for attempt / turn diagnostics.
    """

    def __init__(
        self,
        config: TurnConfig,
        model_type: str = "large",
        system_message: str = "",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        recorder: TurnRecorder | None = None,
    ) -> None:
        self.config = config
        self.builder = RequestBuilder(config, model_type, system_message)
        self.vendor: Vendor = classify_vendor(
            config.provider.base_url, self.builder.model.id,
        )
        self._transport = transport
        self._recorder = recorder
        self._api_key = resolve_value(config.provider.api_key)
        self._http = self._build_http_client()

    def _build_http_client(self) -> httpx.AsyncClient:
        provider = self.config.provider
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        headers.update(provider.extra_headers)
        hooks: dict[str, list[Any]] = {}
        if self.config.debug:
            hooks = {"request": [_log_request], "response": [_log_response]}
        return httpx.AsyncClient(
            base_url=provider.base_url,
            headers=headers,
            timeout=httpx.Timeout(self.config.timeout, connect=30, read=300),
            transport=self._transport,
            event_hooks=hooks,
        )

    async def _refresh_credentials(self) -> None:
        """Re-resolve the API key and replace the HTTP client."""
        self._api_key = resolve_value(self.config.provider.api_key)
        old = self._http
        self._http = self._build_http_client()
        await old.aclose()
        _logger.info("Rebuilt HTTP client after credential refresh")

    def _retry_controller(self) -> RetryController:
        return RetryController(
            self.config.retry,
            base_url=self.config.provider.base_url,
            refresh_credentials=self._refresh_credentials,
        )

    @property
    def model(self) -> str:
        return self.builder.model.id

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._http.post("/chat/completions", json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise from_http_error(e) from e
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError("invalid JSON response") from e

    async def _iter_chunks(
        self, payload: dict[str, Any],
    ) -> AsyncGenerator[dict[str, Any], None]:
        """POST *payload* and yield decoded SSE chunks until ``[DONE]``."""
        try:
            async with self._http.stream(
                "POST", "/chat/completions", json=payload,
            ) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    resp.raise_for_status()
                async for raw_line in resp.aiter_lines():
                    line = raw_line.strip()
                    if not line.startswith("data:"):
                        continue
                    data_str = line[5:].strip()
                    if data_str == "[DONE]":
                        return
                    try:
                        data = json.loads(data_str)
                    except json.JSONDecodeError:
                        _logger.debug("Skipping non-JSON stream line: %.80s", data_str)
                        continue
                    if data.get("error") and not data.get("choices"):
                        raise _stream_error(data["error"])
                    yield data
        except httpx.HTTPStatusError as e:
            raise from_http_error(e) from e
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def stream(
        self,
        history: list[Message],
        tools: list[ToolSpec] | None = None,
        *,
        max_tokens: int = 0,
    ) -> EventStream:
        """Start a streaming run.  Iterate the result to receive events."""
        payload = self.builder.build(history, tools, stream=True, max_tokens=max_tokens)
        return EventStream(lambda emit: self._run_stream(payload, emit))

    async def _run_stream(self, payload: dict[str, Any], emit: Emit) -> None:
        retry = self._retry_controller()
        start = time.monotonic()
        attempt = 0
        try:
            while True:
                attempt += 1
                # Fresh turn per attempt: there is no resumption token
                aggregator = StreamAggregator(self.vendor, payload["model"])
                try:
                    async with contextlib.aclosing(self._iter_chunks(payload)) as chunks:
                        async for chunk in chunks:
                            for event in aggregator.feed(chunk):
                                emit(event)
                    turn = aggregator.finish()
                except EmptyResponseError as e:
                    e.attempt = attempt
                    self._fail(emit, e, attempt)
                    return
                except Exception as e:
                    decision = await retry.decide(attempt, e)
                    if self._recorder is not None:
                        self._recorder.log_attempt_failed(
                            attempt, e, decision.should_retry, decision.delay_ms,
                        )
                    if decision.should_retry:
                        await asyncio.sleep(decision.delay_ms / 1000)
                        continue
                    self._fail(emit, decision.error or e, attempt)
                    return

                self._complete(turn, start, attempt)
                emit(ProviderEvent(type=EventType.COMPLETE, response=turn))
                return
        except asyncio.CancelledError:
            _logger.info("Stream cancelled at attempt %d", attempt)
            emit(ProviderEvent(
                type=EventType.ERROR,
                error=TurnCancelledError("turn cancelled", attempt=attempt),
            ))
            raise

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def send(
        self,
        history: list[Message],
        tools: list[ToolSpec] | None = None,
        *,
        max_tokens: int = 0,
    ) -> Turn:
        """Send a non-streaming request and return the finished turn."""
        payload = self.builder.build(history, tools, stream=False, max_tokens=max_tokens)
        retry = self._retry_controller()
        start = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                data = await self._post(payload)
                turn = turn_from_completion(data, self.vendor, payload["model"])
            except EmptyResponseError as e:
                e.attempt = attempt
                self._fail(None, e, attempt)
                raise
            except Exception as e:
                decision = await retry.decide(attempt, e)
                if self._recorder is not None:
                    self._recorder.log_attempt_failed(
                        attempt, e, decision.should_retry, decision.delay_ms,
                    )
                if decision.should_retry:
                    await asyncio.sleep(decision.delay_ms / 1000)
                    continue
                error = decision.error or e
                self._fail(None, error, attempt)
                if error is e:
                    raise
                raise error from e

            self._complete(turn, start, attempt)
            return turn

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _complete(self, turn: Turn, start: float, attempts: int) -> None:
        end = time.monotonic()
        turn.latency_ms = (end - start) * 1000
        if self._recorder is not None:
            metrics = ExecutionMetrics.from_turn(
                turn, start, end, provider=self.config.provider.id, attempts=attempts,
            )
            self._recorder.log_turn(turn, metrics)

    def _fail(self, emit: Emit | None, error: BaseException, attempts: int) -> None:
        _logger.error("Turn failed after %d attempt(s): %s", attempts, error)
        if self._recorder is not None:
            self._recorder.log_failure(error, attempts)
        if emit is not None:
            emit(ProviderEvent(type=EventType.ERROR, error=error))

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self) -> AsyncLLMClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()


def _stream_error(error: Any) -> APIStatusError:
    """Map an ``{"error": ...}`` object sent inside the stream."""
    if not isinstance(error, dict):
        return status_error(str(error), 500)
    message = str(error.get("message") or error)
    code = error.get("code")
    if isinstance(code, int) and code >= 400:
        return status_error(message, code)
    return status_error(message, 500)


async def _log_request(request: httpx.Request) -> None:
    _logger.debug(
        "HTTP %s %s body=%.2000s", request.method, request.url,
        request.content.decode("utf-8", errors="replace"),
    )


async def _log_response(response: httpx.Response) -> None:
    _logger.debug(
        "HTTP %s %s -> %d", response.request.method, response.request.url,
        response.status_code,
    )
