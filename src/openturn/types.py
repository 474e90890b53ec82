"""Shared data types for OpenTurn."""

from __future__ import annotations

import base64
import enum
import json
from dataclasses import dataclass, field
from typing import Any

from openturn.errors import MalformedToolCallArgumentsError, ToolCallFinishedError


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Role of a conversation entry."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class Attachment:
    """Binary content attached to a user message (referenced or inline)."""

    mime_type: str = "image/png"
    data: bytes = b""
    url: str = ""

    def to_url(self) -> str:
        """Return the attachment as an ``image_url`` value."""
        if self.url:
            return self.url
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class ToolResult:
    """Result of a tool execution, keyed by the call it answers."""

    tool_call_id: str
    content: str
    is_error: bool = False


@dataclass
class ToolCall:
    """A tool invocation requested by the model.

    ``input`` holds the serialized arguments.  While streaming it only ever
    grows by concatenation; once ``finished`` is set the call is frozen.
    """

    id: str
    name: str
    input: str = ""
    finished: bool = False
    type: str = "function"
    error: str = ""  # non-fatal MalformedToolCallArguments report

    def append_input(self, fragment: str) -> None:
        if self.finished:
            raise ToolCallFinishedError(
                f"tool call {self.id!r} is finished; cannot extend its input",
            )
        self.input += fragment

    def finish(self) -> None:
        """Mark the call complete and flag unparseable arguments inline."""
        if self.finished:
            return
        if self.input and not self.error:
            try:
                json.loads(self.input)
            except json.JSONDecodeError as e:
                self.error = f"malformed tool call arguments: {e}"
        self.finished = True

    def arguments(self) -> dict[str, Any]:
        """Decode ``input`` into a dict (empty input means no arguments)."""
        if not self.input:
            return {}
        try:
            value = json.loads(self.input)
        except json.JSONDecodeError as e:
            raise MalformedToolCallArgumentsError(
                f"tool call {self.id!r} ({self.name}) has malformed arguments: {e}",
            ) from e
        if not isinstance(value, dict):
            raise MalformedToolCallArgumentsError(
                f"tool call {self.id!r} ({self.name}) arguments are not an object",
            )
        return value


@dataclass
class Message:
    """One entry of the conversation history handed to the request builder."""

    role: Role
    content: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Tool catalog
# ---------------------------------------------------------------------------

@dataclass
class ToolSpec:
    """Definition of a tool offered to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)
    required: list[str] = field(default_factory=list)

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.parameters,
                    "required": self.required,
                },
            },
        }


# ---------------------------------------------------------------------------
# Turn types
# ---------------------------------------------------------------------------

class FinishReason(str, enum.Enum):
    """Why generation stopped."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    TOOL_USE = "tool_use"
    UNKNOWN = "unknown"


_FINISH_REASONS = {
    "stop": FinishReason.END_TURN,
    "length": FinishReason.MAX_TOKENS,
    "tool_calls": FinishReason.TOOL_USE,
}


def map_finish_reason(reason: str) -> FinishReason:
    """Map a provider finish reason onto the closed ``FinishReason`` set."""
    return _FINISH_REASONS.get(reason, FinishReason.UNKNOWN)


@dataclass
class UsageCounters:
    """Token accounting for a completed turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @classmethod
    def from_openai(cls, usage: dict[str, Any] | None) -> UsageCounters:
        """Read an OpenAI ``usage`` block.

        Cached prompt tokens are reported inside ``prompt_tokens``; they are
        split out so that ``input_tokens`` only counts uncached input.
        """
        if not usage:
            return cls()
        details = usage.get("prompt_tokens_details") or {}
        cached = int(details.get("cached_tokens") or 0)
        prompt = int(usage.get("prompt_tokens") or 0)
        return cls(
            input_tokens=max(0, prompt - cached),
            output_tokens=max(0, int(usage.get("completion_tokens") or 0)),
            cache_creation_tokens=0,
            cache_read_tokens=max(0, cached),
        )

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_tokens
            + self.cache_read_tokens
        )


@dataclass
class Turn:
    """One assistant response aggregated from a stream or a single body."""

    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: FinishReason = FinishReason.UNKNOWN
    usage: UsageCounters = field(default_factory=UsageCounters)
    model: str = ""
    latency_ms: float = 0

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted by one aggregation run."""

    CONTENT_DELTA = "content_delta"
    THINKING_DELTA = "thinking_delta"
    TOOL_USE_START = "tool_use_start"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ProviderEvent:
    """Event delivered to the caller of a streaming run."""

    type: EventType
    content: str = ""
    thinking: str = ""
    tool_call: ToolCall | None = None
    response: Turn | None = None
    error: BaseException | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (EventType.COMPLETE, EventType.ERROR)


@dataclass
class RetryDecision:
    """Outcome of classifying one failed attempt."""

    should_retry: bool
    delay_ms: int = 0
    error: BaseException | None = None
