"""LLM client, stream aggregation and retry policy for OpenTurn."""

from openturn.llm.aggregator import StreamAggregator, ToolCallAccumulator, turn_from_completion
from openturn.llm.client import AsyncLLMClient, EventStream
from openturn.llm.request_builder import RequestBuilder
from openturn.llm.response_parser import extract_tool_calls
from openturn.llm.retry import RetryController, parse_retry_after
from openturn.llm.vendors import Vendor, classify_vendor

__all__ = [
    "AsyncLLMClient",
    "EventStream",
    "RequestBuilder",
    "RetryController",
    "StreamAggregator",
    "ToolCallAccumulator",
    "Vendor",
    "classify_vendor",
    "extract_tool_calls",
    "parse_retry_after",
    "turn_from_completion",
]
