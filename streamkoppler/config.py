"""Configuration models and loaders for streamkoppler.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "streamkoppler/config.yaml"


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class TimeoutConfig(BaseModel):
    """Per-request watchdog deadlines in milliseconds."""

    model_config = ConfigDict(extra="forbid")

    base_timeout_ms: int = 30000
    streaming_timeout_ms: int = 120000
    max_timeout_ms: int = 300000
    inactivity_timeout_ms: int = 60000
    extended_timeout_ms: int = 300000
    extended_timeout_model_prefixes: list[str] = Field(default_factory=lambda: ["o1", "o3", "o4"])

    @field_validator(
        "base_timeout_ms",
        "streaming_timeout_ms",
        "max_timeout_ms",
        "inactivity_timeout_ms",
        "extended_timeout_ms",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        """Reject zero or negative deadlines."""
        if value <= 0:
            raise ValueError("timeouts must be > 0 ms")
        return value

    def uses_extended_timeouts(self, model: str | None) -> bool:
        """Return true when one model name belongs to the slow reasoning families."""
        if not model:
            return False
        lowered = model.lower()
        return any(lowered.startswith(prefix.lower()) for prefix in self.extended_timeout_model_prefixes)


class RateLimitConfig(BaseModel):
    """Fixed-window rate limit settings."""

    enabled: bool = True
    window_seconds: float = 60.0
    max_requests: int = 100
    stream_max_requests: int = 50


class DiagnosticsConfig(BaseModel):
    """Concurrency registry sweep and alert settings."""

    sweep_interval_seconds: float = 30.0
    grace_seconds: float = 5.0
    hanging_age_seconds: float = 120.0
    hanging_inactivity_seconds: float = 60.0
    hanging_timeout_events: int = 2
    hanging_resource_count: int = 10
    slow_completion_seconds: float = 60.0
    hanging_rate_alert: float = 5.0
    leak_rate_alert: float = 2.0


class ModelPricing(BaseModel):
    """Per-token list price of one model."""

    input_tokens: float
    output_tokens: float
    currency: str = "USD"


class ModelMapping(BaseModel):
    """Target of one client-facing model name on the upstream side."""

    llm: str
    llm_model: str
    provider: str | None = None
    pricing: ModelPricing | None = None

    @model_validator(mode="after")
    def _default_provider(self) -> "ModelMapping":
        """Use the upstream family as provider name when none is given."""
        if self.provider is None:
            self.provider = self.llm
        return self


def _default_model_mappings() -> dict[str, ModelMapping]:
    """Build the built-in model table."""
    table = {
        "gpt-4.1-mini-2025-04-14": ("OpenAI", "gpt-4.1-mini-2025-04-14"),
        "gpt-4.1-2025-04-14": ("OpenAI", "gpt-4.1-2025-04-14"),
        "gpt-4o-mini": ("OpenAI", "gpt-4o-mini"),
        "gpt-4o": ("OpenAI", "gpt-4.1-2025-04-14"),
        "gpt-3.5-turbo": ("OpenAI", "gpt-4.1-mini-2025-04-14"),
        "o3-mini": ("OpenAI", "o3-mini"),
        "claude-3-5-sonnet-20241022": ("ClaudeAI", "claude-3-7-sonnet-latest"),
        "claude-3-opus-20240229": ("ClaudeAI", "claude-opus-4-20250514"),
        "claude-sonnet-4-20250514": ("ClaudeAI", "claude-sonnet-4-20250514"),
        "gemini-1.5-pro": ("GeminiAI", "gemini-2.5-pro"),
        "gemini-1.5-flash": ("GeminiAI", "gemini-2.5-flash"),
        "grok-3-beta": ("OpenRouterAI", "x-ai/grok-3-beta"),
    }
    pricing = {
        "gpt-4.1-mini-2025-04-14": ModelPricing(input_tokens=0.0001, output_tokens=0.0002),
        "gpt-4.1-2025-04-14": ModelPricing(input_tokens=0.0003, output_tokens=0.0006),
        "gpt-4o-mini": ModelPricing(input_tokens=0.00015, output_tokens=0.0003),
    }
    return {
        name: ModelMapping(llm=llm, llm_model=target, pricing=pricing.get(name))
        for name, (llm, target) in table.items()
    }


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"
    service_api_key: str | None = None
    auth_mode: Literal["passthrough", "override"] = "passthrough"
    min_api_key_length: int = 10

    upstream_base_url: str
    upstream_api_key: str | None = None
    upstream_connect_retries: int | None = None
    upstream_retry_interval_ms: int | None = None
    upstream_timeout_seconds: float | None = None
    upstream_chat_path: str = "/chat"
    upstream_stream_path: str = "/streamChat"
    upstream_status_path: str = "/get-status"

    default_model: str = "gpt-4.1-mini-2025-04-14"
    default_temperature: float = 0.7
    model_mappings: dict[str, ModelMapping] = Field(default_factory=_default_model_mappings)

    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_service_base_url(self) -> "GatewayConfig":
        """Validate that service_base_url includes host and port."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
        if self.upstream_connect_retries is None:
            self.upstream_connect_retries = 0
        if self.upstream_retry_interval_ms is None:
            self.upstream_retry_interval_ms = 1000
        if self.upstream_timeout_seconds is None:
            self.upstream_timeout_seconds = 300.0
        if self.logging is None:
            self.logging = LoggingConfig()
        if self.auth_mode == "override" and not self.upstream_api_key:
            raise ValueError("auth_mode 'override' requires upstream_api_key")
        return self

    @field_validator("model_mappings", mode="before")
    @classmethod
    def _none_to_defaults(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for the model table as the built-in table."""
        if value is None:
            return _default_model_mappings()
        return value

    def resolve_model(self, model: str | None) -> tuple[str, ModelMapping]:
        """Return the effective client model name and its upstream mapping."""
        name = model or self.default_model
        mapping = self.model_mappings.get(name)
        if mapping is not None:
            return name, mapping
        fallback = self.model_mappings.get(self.default_model)
        if fallback is None:
            fallback = ModelMapping(llm="OpenAI", llm_model=self.default_model)
        return self.default_model, fallback


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


_INT_KEYS = {
    "upstream_connect_retries",
    "upstream_retry_interval_ms",
    "min_api_key_length",
    "timeouts.base_timeout_ms",
    "timeouts.streaming_timeout_ms",
    "timeouts.max_timeout_ms",
    "timeouts.inactivity_timeout_ms",
    "rate_limit.max_requests",
    "rate_limit.stream_max_requests",
}
_FLOAT_KEYS = {
    "upstream_timeout_seconds",
    "default_temperature",
    "rate_limit.window_seconds",
    "diagnostics.sweep_interval_seconds",
}
_BOOL_KEYS = {"rate_limit.enabled", "logging.json"}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "service_base_url": "STREAMKOPPLER_SERVICE_BASE_URL",
        "service_api_key": "STREAMKOPPLER_SERVICE_API_KEY",
        "auth_mode": "STREAMKOPPLER_AUTH_MODE",
        "min_api_key_length": "STREAMKOPPLER_MIN_API_KEY_LENGTH",
        "upstream_base_url": "STREAMKOPPLER_UPSTREAM_BASE_URL",
        "upstream_api_key": "STREAMKOPPLER_UPSTREAM_API_KEY",
        "upstream_connect_retries": "STREAMKOPPLER_UPSTREAM_CONNECT_RETRIES",
        "upstream_retry_interval_ms": "STREAMKOPPLER_UPSTREAM_RETRY_INTERVAL_MS",
        "upstream_timeout_seconds": "STREAMKOPPLER_UPSTREAM_TIMEOUT_SECONDS",
        "default_model": "STREAMKOPPLER_DEFAULT_MODEL",
        "default_temperature": "STREAMKOPPLER_DEFAULT_TEMPERATURE",
        "timeouts.base_timeout_ms": "STREAMKOPPLER_BASE_TIMEOUT_MS",
        "timeouts.streaming_timeout_ms": "STREAMKOPPLER_STREAMING_TIMEOUT_MS",
        "timeouts.max_timeout_ms": "STREAMKOPPLER_MAX_TIMEOUT_MS",
        "timeouts.inactivity_timeout_ms": "STREAMKOPPLER_INACTIVITY_TIMEOUT_MS",
        "rate_limit.enabled": "STREAMKOPPLER_RATE_LIMIT_ENABLED",
        "rate_limit.window_seconds": "STREAMKOPPLER_RATE_LIMIT_WINDOW_SECONDS",
        "rate_limit.max_requests": "STREAMKOPPLER_RATE_LIMIT_MAX_REQUESTS",
        "rate_limit.stream_max_requests": "STREAMKOPPLER_RATE_LIMIT_STREAM_MAX_REQUESTS",
        "diagnostics.sweep_interval_seconds": "STREAMKOPPLER_SWEEP_INTERVAL_SECONDS",
        "logging.level": "STREAMKOPPLER_LOG_LEVEL",
        "logging.json": "STREAMKOPPLER_LOG_JSON",
    }

    out = dict(data)

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key in _INT_KEYS:
            parsed: Any = int(value)
        elif key in _FLOAT_KEYS:
            parsed = float(value)
        elif key in _BOOL_KEYS:
            parsed = value.strip().lower() in {"1", "true", "yes", "on"}
        elif key == "auth_mode":
            parsed = value.strip().lower()
        else:
            parsed = value

        section, _, field = key.partition(".")
        if not field:
            out[key] = parsed
            continue
        nested = dict(out.get(section) or {})
        nested[field] = parsed
        out[section] = nested

    return out


def config_file_path(path: str | None = None) -> Path:
    """Return the config file path selected by argument, env, or default."""
    return Path(path or os.getenv("STREAMKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH)


def load_config(path: str | None = None) -> GatewayConfig:
    """Load, merge, and validate gateway configuration."""
    raw = _load_yaml(str(config_file_path(path)))
    raw = _override_from_env(raw)
    return GatewayConfig.model_validate(raw)
