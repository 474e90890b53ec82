"""Tool call recovery from free text.

Some OpenAI-compatible vendors leave the structured ``tool_calls`` channel
empty and write the call into the message content instead.  Two textual
grammars are understood:

Inline tags (x.ai)::

    <xai:function_call name="view"> {"file_path": "/x"} </xai:function_call>

The closing tag is optional; the blob then runs to the next opening tag or
the end of the text.

Key/value blocks (GLM)::

    <tool_call>edit
    <arg_key>file_path</arg_key>
    <arg_value>/x</arg_value>
    </tool_call>
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from openturn.types import ToolCall

from .vendors import Vendor

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def _is_json(raw: str) -> bool:
    try:
        json.loads(raw)
    except json.JSONDecodeError:
        return False
    return True


def _load_edits(raw: str) -> list[dict[str, Any]] | None:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(value, list) and all(isinstance(e, dict) for e in value):
        return value
    return None


def _multiedit_arguments(raw: str) -> str:
    """Turn a bare edit list into ``{"file_path": "", "edits": [...]}``.

    One repair is attempted (closing the array).  If the blob still does not
    parse it is returned unchanged so the caller can see the failure.
    """
    if not raw.startswith("["):
        return raw
    edits = _load_edits(raw)
    if edits is None and not raw.endswith("]"):
        edits = _load_edits(raw + "]")
    if edits is None:
        _logger.warning("Could not repair multiedit arguments: %.80s", raw)
        return raw
    return json.dumps({"file_path": "", "edits": edits})


def _inline_arguments(name: str, raw: str) -> str:
    if name == "multiedit":
        return _multiedit_arguments(raw)
    if _is_json(raw):
        return raw
    if raw.startswith("[") and raw.endswith("]"):
        return raw
    return json.dumps(raw)


# ---------------------------------------------------------------------------
# Inline-tag grammar
# ---------------------------------------------------------------------------

_INLINE_OPEN = re.compile(
    r'<(?P<tag>xai:function_call|function_call|call)\s+name="(?P<name>[^"]+)"\s*>'
)


def parse_inline_tool_calls(text: str, prefix: str = "xai") -> list[ToolCall]:
    """Extract ``<… name="tool"> args`` calls from *text*."""
    opens = list(_INLINE_OPEN.finditer(text))
    calls: list[ToolCall] = []
    for i, match in enumerate(opens):
        end = opens[i + 1].start() if i + 1 < len(opens) else len(text)
        blob = text[match.end():end]
        close = blob.find(f"</{match.group('tag')}>")
        if close >= 0:
            blob = blob[:close]
        name = match.group("name")
        arguments = _inline_arguments(name, blob.strip())
        if name == "multiedit" and not arguments:
            _logger.debug("Skipping multiedit call %d without arguments", i)
            continue
        call = ToolCall(id=f"{prefix}_call_{i}", name=name, input=arguments)
        call.finish()
        calls.append(call)
    return calls


# ---------------------------------------------------------------------------
# Key/value block grammar
# ---------------------------------------------------------------------------

_KV_BLOCK = re.compile(
    r"<tool_call>(?P<body>.*?)(?:</tool_call>|(?=<tool_call>)|\Z)", re.DOTALL,
)
_KV_PAIR = re.compile(
    r"<arg_key>(?P<key>.*?)</arg_key>\s*<arg_value>(?P<value>.*?)</arg_value>",
    re.DOTALL,
)


def parse_key_value_tool_calls(text: str, prefix: str = "glm") -> list[ToolCall]:
    """Extract ``<tool_call>name <arg_key>…<arg_value>…`` blocks from *text*.

    Blocks without a name are skipped.  Values are kept as strings.
    """
    calls: list[ToolCall] = []
    for block in _KV_BLOCK.finditer(text):
        body = block.group("body")
        head = body.split("<arg_key>", 1)[0].strip()
        name = head.splitlines()[0].strip() if head else ""
        if not name:
            continue
        args = {
            pair.group("key").strip(): pair.group("value")
            for pair in _KV_PAIR.finditer(body)
        }
        call = ToolCall(
            id=f"{prefix}_call_{len(calls)}",
            name=name,
            input=json.dumps(args),
        )
        call.finish()
        calls.append(call)
    return calls


def extract_tool_calls(vendor: Vendor, text: str) -> list[ToolCall]:
    """Run the grammar that belongs to *vendor* over *text*."""
    if not text:
        return []
    if vendor is Vendor.XAI:
        calls = parse_inline_tool_calls(text, prefix=vendor.value)
    elif vendor is Vendor.GLM:
        calls = parse_key_value_tool_calls(text, prefix=vendor.value)
    else:
        calls = []
    if calls:
        _logger.debug(
            "Recovered %d tool call(s) from %s text", len(calls), vendor.value,
        )
    return calls
