from pathlib import Path

import pytest

from streamkoppler.config import GatewayConfig, config_file_path, load_config


def test_load_config_merges_yaml_and_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(
        "upstream_base_url: http://upstream.test\n"
        "timeouts:\n"
        "  base_timeout_ms: 1000\n"
        "logging:\n"
        "  level: DEBUG\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("STREAMKOPPLER_INACTIVITY_TIMEOUT_MS", "2500")
    monkeypatch.setenv("STREAMKOPPLER_LOG_JSON", "true")
    monkeypatch.setenv("STREAMKOPPLER_RATE_LIMIT_ENABLED", "no")

    cfg = load_config(str(path))

    assert cfg.upstream_base_url == "http://upstream.test"
    assert cfg.timeouts.base_timeout_ms == 1000
    assert cfg.timeouts.inactivity_timeout_ms == 2500
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.json_logs is True
    assert cfg.rate_limit.enabled is False


def test_missing_file_uses_environment_only(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STREAMKOPPLER_UPSTREAM_BASE_URL", "http://env-upstream:9000")
    cfg = load_config(str(tmp_path / "absent.yaml"))

    assert cfg.upstream_base_url == "http://env-upstream:9000"
    assert cfg.upstream_connect_retries == 0
    assert cfg.upstream_retry_interval_ms == 1000
    assert cfg.timeouts.streaming_timeout_ms == 120000


def test_config_file_path_prefers_argument_then_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STREAMKOPPLER_CONFIG", "/etc/sk.yaml")
    assert config_file_path("local.yaml") == Path("local.yaml")
    assert config_file_path() == Path("/etc/sk.yaml")


def test_service_base_url_requires_port() -> None:
    with pytest.raises(ValueError):
        GatewayConfig.model_validate({"service_base_url": "http://localhost", "upstream_base_url": "http://u"})


def test_timeouts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        GatewayConfig.model_validate({"upstream_base_url": "http://u", "timeouts": {"base_timeout_ms": 0}})


def test_resolve_model_falls_back_to_default() -> None:
    cfg = GatewayConfig.model_validate({"upstream_base_url": "http://u"})

    name, mapping = cfg.resolve_model("claude-3-5-sonnet-20241022")
    assert name == "claude-3-5-sonnet-20241022"
    assert mapping.llm == "ClaudeAI"

    name, mapping = cfg.resolve_model("no-such-model")
    assert name == cfg.default_model
    assert mapping.llm_model == cfg.default_model

    assert cfg.resolve_model(None)[0] == cfg.default_model


def test_extended_timeouts_match_model_prefixes() -> None:
    cfg = GatewayConfig.model_validate({"upstream_base_url": "http://u"})
    assert cfg.timeouts.uses_extended_timeouts("o1-preview")
    assert cfg.timeouts.uses_extended_timeouts("O3-mini")
    assert not cfg.timeouts.uses_extended_timeouts("gpt-4o")
    assert not cfg.timeouts.uses_extended_timeouts(None)
