"""Fold streamed chat-completion chunks into one ``Turn``.

OpenAI-compatible providers send a turn as a series of ``chat.completion.chunk``
objects.  Text and reasoning arrive as deltas that are simply appended; tool
calls arrive as fragments addressed by a positional ``index`` that only
becomes tied to a call id once the first fragment for it has been seen.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from openturn.errors import EmptyResponseError
from openturn.types import (
    EventType,
    FinishReason,
    ProviderEvent,
    ToolCall,
    Turn,
    UsageCounters,
    map_finish_reason,
)

from .response_parser import extract_tool_calls
from .vendors import Vendor

_logger = logging.getLogger(__name__)

# Some providers (OpenRouter/Qwen) report -1 for the first call of a chunk
_INVALID_INDEX = -1

_REASONING_FIELDS = ("reasoning", "reasoning_content")


# ---------------------------------------------------------------------------
# ToolCallAccumulator: streaming native function-calling
# ---------------------------------------------------------------------------

class ToolCallAccumulator:
    """Reconcile tool-call fragments into calls.

    ``_calls`` keeps every call ever started, in start order, and is only
    appended to.  ``_by_index`` binds a positional index to the call that
    currently owns it; a later call may take the index over while the
    earlier one stays in ``_calls``.
    """

    def __init__(self) -> None:
        self._calls: list[ToolCall] = []
        self._by_index: dict[int, ToolCall] = {}

    def feed(self, fragment: dict[str, Any]) -> ToolCall | None:
        """Apply one fragment.  Returns the call if the fragment started one."""
        index = fragment.get("index")
        if index is None or index == _INVALID_INDEX:
            index = 0
        call_id = fragment.get("id") or ""
        func = fragment.get("function") or {}
        arguments = func.get("arguments") or ""

        existing = self._by_index.get(index)
        if existing is not None:
            if not call_id or call_id == existing.id:
                existing.append_input(arguments)
                return None
            # Restated id bound elsewhere: append to that call
            match = self._find(call_id)
            if match is not None:
                match.append_input(arguments)
                return None

        call = ToolCall(
            id=call_id or str(uuid.uuid4()),
            name=func.get("name") or "",
            input=arguments,
        )
        self._calls.append(call)
        self._by_index[index] = call
        return call

    def _find(self, call_id: str) -> ToolCall | None:
        by_id = {call.id: call for call in self._calls}
        return by_id.get(call_id)

    def has_calls(self) -> bool:
        return bool(self._calls)

    def finalize(self) -> list[ToolCall]:
        """Finish every named call and return them in start order."""
        result: list[ToolCall] = []
        for call in self._calls:
            if not call.name:
                _logger.debug("Dropping unnamed tool call %s", call.id)
                continue
            call.finish()
            result.append(call)
        return result


# ---------------------------------------------------------------------------
# StreamAggregator
# ---------------------------------------------------------------------------

def _resolve_turn(
    content: str,
    tool_calls: list[ToolCall],
    raw_finish: str,
    vendor: Vendor,
) -> tuple[list[ToolCall], FinishReason]:
    # At least one vendor omits finish_reason on success
    finish = map_finish_reason(raw_finish or "stop")
    if not tool_calls and vendor is not Vendor.STANDARD and content:
        tool_calls = extract_tool_calls(vendor, content)
    if tool_calls:
        finish = FinishReason.TOOL_USE
    return tool_calls, finish


class StreamAggregator:
    """Builds a single ``Turn`` from the chunks of one attempt.

    One instance per attempt: a retry starts from a fresh aggregator.
    """

    def __init__(self, vendor: Vendor = Vendor.STANDARD, model: str = "") -> None:
        self.vendor = vendor
        self.model = model
        self._content: list[str] = []
        self._reasoning: list[str] = []
        self._tool_calls = ToolCallAccumulator()
        self._finish_reason = ""
        self._usage: dict[str, Any] | None = None
        self._choices_seen = 0

    @property
    def content(self) -> str:
        return "".join(self._content)

    def feed(self, chunk: dict[str, Any]) -> list[ProviderEvent]:
        """Fold one decoded chunk; return the events it produced."""
        events: list[ProviderEvent] = []
        if chunk.get("model"):
            self.model = chunk["model"]
        if chunk.get("usage"):
            self._usage = chunk["usage"]

        for choice in chunk.get("choices") or []:
            self._choices_seen += 1
            if choice.get("finish_reason"):
                self._finish_reason = choice["finish_reason"]
            delta = choice.get("delta") or {}

            for key in _REASONING_FIELDS:
                reasoning = delta.get(key)
                if isinstance(reasoning, str) and reasoning:
                    self._reasoning.append(reasoning)
                    events.append(
                        ProviderEvent(type=EventType.THINKING_DELTA, thinking=reasoning),
                    )
                    break

            text = delta.get("content")
            if text:
                self._content.append(text)
                events.append(ProviderEvent(type=EventType.CONTENT_DELTA, content=text))

            for fragment in delta.get("tool_calls") or []:
                started = self._tool_calls.feed(fragment)
                if started is not None:
                    events.append(
                        ProviderEvent(
                            type=EventType.TOOL_USE_START,
                            tool_call=ToolCall(
                                id=started.id, name=started.name, finished=False,
                            ),
                        ),
                    )
        return events

    def finish(self) -> Turn:
        """Resolve the end of the stream into the final ``Turn``."""
        if self._choices_seen == 0:
            raise EmptyResponseError(
                "received empty streaming response - check endpoint configuration",
            )
        content = self.content
        tool_calls, finish = _resolve_turn(
            content, self._tool_calls.finalize(), self._finish_reason, self.vendor,
        )
        return Turn(
            content=content,
            reasoning="".join(self._reasoning),
            tool_calls=tool_calls,
            finish_reason=finish,
            usage=UsageCounters.from_openai(self._usage),
            model=self.model,
        )


# ---------------------------------------------------------------------------
# Non-streaming responses
# ---------------------------------------------------------------------------

def turn_from_completion(
    data: dict[str, Any],
    vendor: Vendor = Vendor.STANDARD,
    model: str = "",
) -> Turn:
    """Build a ``Turn`` from a ``chat.completion`` body."""
    choices = data.get("choices") or []
    if not choices:
        raise EmptyResponseError(
            "received empty response - check endpoint configuration",
        )
    choice = choices[0]
    message = choice.get("message") or {}
    content = message.get("content") or ""

    tool_calls: list[ToolCall] = []
    for tc in message.get("tool_calls") or []:
        func = tc.get("function") or {}
        if not func.get("name"):
            continue
        call = ToolCall(
            id=tc.get("id") or str(uuid.uuid4()),
            name=func["name"],
            input=func.get("arguments") or "",
        )
        call.finish()
        tool_calls.append(call)

    reasoning = ""
    for key in _REASONING_FIELDS:
        if isinstance(message.get(key), str):
            reasoning = message[key]
            break

    tool_calls, finish = _resolve_turn(
        content, tool_calls, choice.get("finish_reason") or "", vendor,
    )
    return Turn(
        content=content,
        reasoning=reasoning,
        tool_calls=tool_calls,
        finish_reason=finish,
        usage=UsageCounters.from_openai(data.get("usage")),
        model=data.get("model") or model,
    )
