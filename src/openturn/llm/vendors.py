"""Vendor classification for OpenAI-compatible endpoints.

All checks here are substring heuristics over the base URL and model id.
They pick a fallback grammar; they never decide correctness.
"""

from __future__ import annotations

import enum


class Vendor(enum.Enum):
    """Endpoint families that matter to the aggregator."""

    STANDARD = "standard"
    XAI = "xai"  # tool calls as inline <xai:function_call> tags
    GLM = "glm"  # tool calls as <tool_call> key/value blocks


# Ordered: first rule that matches wins.
# (vendor, base-url substrings, model-id substrings)
_VENDOR_RULES: list[tuple[Vendor, tuple[str, ...], tuple[str, ...]]] = [
    (Vendor.XAI, ("x.ai", "xai"), ("grok",)),
    (Vendor.GLM, ("z.ai", "bigmodel", "zhipu"), ("glm",)),
]


def classify_vendor(base_url: str, model_id: str) -> Vendor:
    url = base_url.lower()
    model = model_id.lower()
    for vendor, url_markers, model_markers in _VENDOR_RULES:
        if any(m in url for m in url_markers) or any(m in model for m in model_markers):
            return vendor
    return Vendor.STANDARD


def is_local_endpoint(base_url: str, markers: list[str]) -> bool:
    """True for development-style servers that mis-report rate limits."""
    url = base_url.lower()
    return any(m.lower() in url for m in markers)


def supports_cache_annotations(provider_id: str, model_id: str) -> bool:
    """Segment-level ``cache_control`` is honoured for Anthropic models via OpenRouter."""
    return provider_id == "openrouter" and model_id.startswith("anthropic/")
