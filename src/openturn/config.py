"""Configuration management for OpenTurn.

Config discovery (first match wins):
  1. Explicit ``--config`` path
  2. ``./openturn.yaml``
  3. ``~/.openturn/openturn.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from openturn.errors import CredentialResolutionError

_logger = logging.getLogger(__name__)


class ModelSpec(BaseModel):
    """Capabilities of one model offered by the provider."""

    id: str
    name: str = ""
    default_max_tokens: int = 4096
    can_reason: bool = False


class ModelTypeSettings(BaseModel):
    """Per model type ("large" / "small") selection and budget."""

    model: str
    max_tokens: int = 0  # 0 = model default
    reasoning_effort: str = ""


class ProviderConfig(BaseModel):
    id: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""  # literal key, "$VAR" or "${VAR}"; empty = no auth header
    extra_headers: dict[str, str] = Field(default_factory=dict)
    extra_body: dict[str, Any] = Field(default_factory=dict)  # merged into every request
    system_prompt_prefix: str = ""
    system_prompt_prefix_path: str = ""
    disable_cache: bool = False
    models: list[ModelSpec] = Field(default_factory=list)

    def resolved_system_prompt_prefix(self) -> str:
        """Return the prefix, reading ``system_prompt_prefix_path`` if set."""
        if self.system_prompt_prefix_path:
            path = Path(self.system_prompt_prefix_path).expanduser()
            return path.read_text(encoding="utf-8").strip()
        return self.system_prompt_prefix

    def model(self, model_id: str) -> ModelSpec:
        """Look up a model by id; unknown ids get default capabilities."""
        for spec in self.models:
            if spec.id == model_id:
                return spec
        return ModelSpec(id=model_id)


class RetryConfig(BaseModel):
    max_retries: int = 8
    base_delay_ms: int = 2000
    jitter: float = 0.2
    # Endpoints known to answer 429 spuriously (LM Studio and friends)
    local_endpoint_markers: list[str] = Field(
        default_factory=lambda: ["localhost", "127.0.0.1", "0.0.0.0", "lmstudio"]
    )


class TurnConfig(BaseModel):
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    models: dict[str, ModelTypeSettings] = Field(
        default_factory=lambda: {
            "large": ModelTypeSettings(model="gpt-4o"),
            "small": ModelTypeSettings(model="gpt-4o-mini"),
        }
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)
    timeout: float = 120
    debug: bool = False

    def model_settings(self, model_type: str) -> ModelTypeSettings:
        """Settings for *model_type*, falling back to "large"."""
        if model_type in self.models:
            return self.models[model_type]
        if "large" in self.models:
            return self.models["large"]
        raise KeyError(f"No model configured for type {model_type!r}")


# ---------------------------------------------------------------------------
# Credential resolution
# ---------------------------------------------------------------------------

_ENV_REF = re.compile(r"^\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))$")


def resolve_value(value: str) -> str:
    """Resolve ``$VAR`` / ``${VAR}`` references against the environment.

    Anything else is returned unchanged.  Called again on every 401 so a
    rotated key is picked up without restarting.
    """
    match = _ENV_REF.match(value.strip())
    if not match:
        return value
    name = match.group("braced") or match.group("bare")
    resolved = os.environ.get(name)
    if not resolved:
        raise CredentialResolutionError(f"environment variable {name} is not set")
    return resolved


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

CONFIG_FILENAME = "openturn.yaml"


def load_config(
    config_path: str | Path | None = None,
) -> tuple[TurnConfig, Path | None]:
    """Load configuration from YAML file.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.
    """
    if config_path is None:
        for candidate in (
            Path.cwd() / CONFIG_FILENAME,
            Path.home() / ".openturn" / CONFIG_FILENAME,
        ):
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return TurnConfig(), None

    resolved = Path(config_path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    _logger.info("Loading config from %s", resolved)
    with open(resolved) as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}
    return TurnConfig.model_validate(raw), resolved.resolve()
