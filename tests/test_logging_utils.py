import json
import logging

from streamkoppler.config import LoggingConfig
from streamkoppler.logging_utils import JsonLogFormatter, redact_headers, setup_logging, to_bounded_json


def test_setup_logging_forces_noisy_third_party_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("httpcore.http11")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="INFO", json=False))

    assert logging.getLogger().level == logging.INFO
    assert noisy.level == logging.INFO
    assert noisy.handlers == []
    assert noisy.propagate is True


def test_setup_logging_forces_watchdog_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("watchdog.observers.inotify_buffer")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="WARNING", json=True))

    assert noisy.level == logging.WARNING
    assert noisy.handlers == []
    assert isinstance(logging.getLogger().handlers[0].formatter, JsonLogFormatter)


def test_json_formatter_includes_request_context() -> None:
    record = logging.LogRecord("streamkoppler.coordinator", logging.INFO, __file__, 1, "terminated %s", ("x",), None)
    record.request_id = "req-1"
    record.reason = "completed"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "terminated x"
    assert payload["request_id"] == "req-1"
    assert payload["reason"] == "completed"
    assert "kind" not in payload


def test_to_bounded_json_truncates() -> None:
    text = to_bounded_json({"data": "x" * 50}, max_len=20)
    assert text.startswith('{"data": "xxxxxxxxx')
    assert text.endswith("chars)")


def test_redact_headers_masks_credentials() -> None:
    redacted = redact_headers({"Authorization": "Bearer secret", "X-API-Key": "k", "Accept": "*/*"})
    assert redacted == {"Authorization": "Bearer [REDACTED]", "X-API-Key": "[REDACTED]", "Accept": "*/*"}
