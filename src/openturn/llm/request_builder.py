"""Build OpenAI-compatible ``/chat/completions`` request bodies."""

from __future__ import annotations

import logging
from typing import Any

from openturn.config import ModelSpec, ModelTypeSettings, TurnConfig
from openturn.types import Message, Role, ToolSpec

from .vendors import supports_cache_annotations

_logger = logging.getLogger(__name__)

_CACHE_CONTROL = {"type": "ephemeral"}
_KNOWN_EFFORTS = ("low", "medium", "high", "minimal")


class RequestBuilder:
    """Turns a conversation and a tool catalog into a provider request.

    Parameters
    ----------
    config:
        Configuration snapshot (provider, per model type settings).
    model_type:
        Which entry of ``config.models`` to use (``"large"`` / ``"small"``).
    system_message:
        Base system prompt; the provider prefix, if any, goes in front.
    """

    def __init__(
        self,
        config: TurnConfig,
        model_type: str = "large",
        system_message: str = "",
    ) -> None:
        self.config = config
        self.model_type = model_type
        self.system_message = system_message

    @property
    def settings(self) -> ModelTypeSettings:
        return self.config.model_settings(self.model_type)

    @property
    def model(self) -> ModelSpec:
        return self.config.provider.model(self.settings.model)

    @property
    def cache_enabled(self) -> bool:
        provider = self.config.provider
        return not provider.disable_cache and supports_cache_annotations(
            provider.id, self.model.id,
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def _system(self, cache: bool) -> dict[str, Any]:
        prefix = self.config.provider.resolved_system_prompt_prefix()
        if not cache:
            text = f"{prefix}\n{self.system_message}" if prefix else self.system_message
            return {"role": "system", "content": text}
        parts: list[dict[str, Any]] = []
        if prefix:
            parts.append({"type": "text", "text": prefix})
        parts.append({"type": "text", "text": self.system_message})
        parts[-1]["cache_control"] = dict(_CACHE_CONTROL)
        return {"role": "system", "content": parts}

    def convert_messages(self, history: list[Message]) -> list[dict[str, Any]]:
        """Convert *history* into OpenAI messages, system message first."""
        cache = self.cache_enabled
        out: list[dict[str, Any]] = [self._system(cache)]

        for i, msg in enumerate(history):
            mark = cache and i >= len(history) - 2

            if msg.role == Role.USER:
                text_part: dict[str, Any] = {"type": "text", "text": msg.content}
                if mark:
                    text_part["cache_control"] = dict(_CACHE_CONTROL)
                if msg.attachments or cache:
                    parts = [text_part] + [
                        {"type": "image_url", "image_url": {"url": a.to_url()}}
                        for a in msg.attachments
                    ]
                    out.append({"role": "user", "content": parts})
                else:
                    out.append({"role": "user", "content": msg.content})

            elif msg.role == Role.ASSISTANT:
                # Interrupted calls never got a result; do not show them again
                finished = [c for c in msg.tool_calls if c.finished]
                if not msg.content and not finished:
                    _logger.debug("Skipping empty assistant message at %d", i)
                    continue
                entry: dict[str, Any] = {"role": "assistant"}
                if msg.content:
                    entry["content"] = msg.content
                if finished:
                    entry["tool_calls"] = [
                        {
                            "id": c.id,
                            "type": "function",
                            "function": {"name": c.name, "arguments": c.input},
                        }
                        for c in finished
                    ]
                if mark:
                    entry["cache_control"] = dict(_CACHE_CONTROL)
                out.append(entry)

            elif msg.role == Role.TOOL:
                for result in msg.tool_results:
                    out.append({
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "content": result.content,
                    })

        return out

    @staticmethod
    def convert_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
        return [tool.to_openai_schema() for tool in tools]

    # ------------------------------------------------------------------
    # Request body
    # ------------------------------------------------------------------

    def resolve_max_tokens(self, override: int = 0) -> int:
        """Explicit override, then per model type setting, then model default."""
        if override > 0:
            return override
        if self.settings.max_tokens > 0:
            return self.settings.max_tokens
        return self.model.default_max_tokens

    def build(
        self,
        history: list[Message],
        tools: list[ToolSpec] | None = None,
        *,
        stream: bool = False,
        max_tokens: int = 0,
    ) -> dict[str, Any]:
        model = self.model
        payload: dict[str, Any] = {
            "model": model.id,
            "messages": self.convert_messages(history),
        }
        # Some routers reject an empty tools array
        if tools:
            payload["tools"] = self.convert_tools(tools)

        budget = self.resolve_max_tokens(max_tokens)
        if model.can_reason:
            payload["max_completion_tokens"] = budget
            effort = self.settings.reasoning_effort
            if effort:
                if effort not in _KNOWN_EFFORTS:
                    _logger.debug("Passing custom reasoning effort %r", effort)
                payload["reasoning_effort"] = effort
        else:
            payload["max_tokens"] = budget

        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}

        if self.config.provider.extra_body:
            payload.update(self.config.provider.extra_body)
        return payload
