"""Logging setup and log-payload helpers for streamkoppler."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from .config import LoggingConfig

_CONTROLLED_LOGGER_PREFIXES = (
    "httpcore",
    "httpx",
    "uvicorn",
    "watchdog",
)

_SECRET_HEADERS = {"authorization", "x-api-key", "proxy-authorization"}

# Extra attributes attached via `extra={...}` that belong in JSON output.
_CONTEXT_FIELDS = ("request_id", "reason", "kind")


class JsonLogFormatter(logging.Formatter):
    """Format log records as JSON lines."""

    def format(self, record: logging.LogRecord) -> str:
        """Render one log record as JSON."""
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(cfg: LoggingConfig) -> None:
    """Configure the root logger from runtime configuration."""
    level = getattr(logging, cfg.level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    handler = logging.StreamHandler()
    if cfg.json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.handlers.clear()
    root.addHandler(handler)

    # Pin third-party logger trees to the configured level on every (re)load.
    known_logger_names = [str(name) for name in logging.root.manager.loggerDict]
    for prefix in _CONTROLLED_LOGGER_PREFIXES:
        targets = [prefix, *(name for name in known_logger_names if name.startswith(f"{prefix}."))]
        for name in targets:
            logger = logging.getLogger(name)
            logger.setLevel(level)
            logger.handlers.clear()
            logger.propagate = True


def to_bounded_json(value: Any, max_len: int = 4000) -> str:
    """Serialize a value for debug logs and cap its length."""
    try:
        text = json.dumps(value, ensure_ascii=False, default=str)
    except Exception:
        text = repr(value)
    if len(text) <= max_len:
        return text
    return f"{text[:max_len]}...(truncated {len(text) - max_len} chars)"


def redact_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of HTTP headers with credentials masked."""
    out: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in _SECRET_HEADERS:
            out[name] = value
            continue
        scheme, _, token = value.partition(" ")
        out[name] = f"{scheme} [REDACTED]" if token else "[REDACTED]"
    return out
