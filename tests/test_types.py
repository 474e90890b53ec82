"""Tests for OpenTurn shared types."""

import pytest

from openturn.errors import MalformedToolCallArgumentsError, ToolCallFinishedError
from openturn.types import (
    Attachment,
    EventType,
    FinishReason,
    ProviderEvent,
    ToolCall,
    ToolSpec,
    Turn,
    UsageCounters,
    map_finish_reason,
)


class TestToolCall:
    def test_defaults(self):
        tc = ToolCall(id="call_1", name="view")
        assert tc.input == ""
        assert tc.finished is False
        assert tc.type == "function"
        assert tc.error == ""

    def test_append_concatenates(self):
        tc = ToolCall(id="call_1", name="view", input='{"file')
        tc.append_input('_path": ')
        tc.append_input('"/x"}')
        assert tc.input == '{"file_path": "/x"}'

    def test_finished_call_is_frozen(self):
        tc = ToolCall(id="call_1", name="view", input="{}")
        tc.finish()
        with pytest.raises(ToolCallFinishedError):
            tc.append_input("more")
        assert tc.input == "{}"

    def test_finish_flags_malformed_input(self):
        tc = ToolCall(id="call_1", name="view", input='{"file_path": ')
        tc.finish()
        assert tc.finished
        assert "malformed" in tc.error

    def test_finish_empty_input_is_fine(self):
        tc = ToolCall(id="call_1", name="help")
        tc.finish()
        assert tc.error == ""
        assert tc.arguments() == {}

    def test_arguments(self):
        tc = ToolCall(id="call_1", name="view", input='{"file_path": "/x"}')
        assert tc.arguments() == {"file_path": "/x"}

    def test_arguments_malformed(self):
        tc = ToolCall(id="call_1", name="bash", input='"ls -la"')
        with pytest.raises(MalformedToolCallArgumentsError):
            tc.arguments()


class TestFinishReason:
    def test_mapping(self):
        assert map_finish_reason("stop") == FinishReason.END_TURN
        assert map_finish_reason("length") == FinishReason.MAX_TOKENS
        assert map_finish_reason("tool_calls") == FinishReason.TOOL_USE

    def test_anything_else_is_unknown(self):
        assert map_finish_reason("content_filter") == FinishReason.UNKNOWN
        assert map_finish_reason("") == FinishReason.UNKNOWN


class TestUsageCounters:
    def test_from_openai_splits_cached_tokens(self):
        usage = UsageCounters.from_openai({
            "prompt_tokens": 100,
            "completion_tokens": 20,
            "prompt_tokens_details": {"cached_tokens": 30},
        })
        assert usage.input_tokens == 70
        assert usage.output_tokens == 20
        assert usage.cache_read_tokens == 30
        assert usage.cache_creation_tokens == 0
        assert usage.total_tokens == 120

    def test_from_openai_empty(self):
        assert UsageCounters.from_openai(None) == UsageCounters()
        assert UsageCounters.from_openai({}) == UsageCounters()

    def test_never_negative(self):
        usage = UsageCounters.from_openai({
            "prompt_tokens": 5,
            "prompt_tokens_details": {"cached_tokens": 9},
        })
        assert usage.input_tokens == 0


class TestAttachment:
    def test_url_passthrough(self):
        a = Attachment(url="https://example.com/cat.png")
        assert a.to_url() == "https://example.com/cat.png"

    def test_inline_data_url(self):
        a = Attachment(mime_type="image/jpeg", data=b"abc")
        assert a.to_url() == "data:image/jpeg;base64,YWJj"


class TestToolSpec:
    def test_openai_schema(self):
        spec = ToolSpec(
            name="view",
            description="Read a file",
            parameters={"file_path": {"type": "string"}},
            required=["file_path"],
        )
        schema = spec.to_openai_schema()
        assert schema["type"] == "function"
        fn = schema["function"]
        assert fn["name"] == "view"
        assert fn["parameters"]["type"] == "object"
        assert fn["parameters"]["properties"]["file_path"]["type"] == "string"
        assert fn["parameters"]["required"] == ["file_path"]


class TestEvents:
    def test_terminal(self):
        assert ProviderEvent(type=EventType.COMPLETE, response=Turn()).is_terminal
        assert ProviderEvent(type=EventType.ERROR).is_terminal
        assert not ProviderEvent(type=EventType.CONTENT_DELTA, content="x").is_terminal

    def test_turn_has_tool_calls(self):
        assert not Turn().has_tool_calls
        assert Turn(tool_calls=[ToolCall(id="a", name="b")]).has_tool_calls
