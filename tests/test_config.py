"""Tests for webchat_config module."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from webchat_config import (
    CHATGPT_URL,
    DEFAULT_BROWSER_CONFIG,
    TRACE_ENV,
    PollingConfig,
    RunConfig,
    load_config,
    parse_duration,
    resolve_browser_config,
    trace_enabled,
)


class TestRunConfig:
    def test_defaults(self) -> None:
        config = RunConfig()
        assert config.url == CHATGPT_URL
        assert config.desired_model is None
        assert config.headless is False
        assert config.keep_browser is False
        assert config.cookie_sync is True
        assert config.input_timeout_ms > 0
        assert config.timeout_ms > 0
        assert config.polling.stable_polls == 2
        assert config.polling.launch_attempts == 30
        assert config.vision.enabled is False

    def test_rejects_non_positive_timeouts(self) -> None:
        with pytest.raises(ValidationError):
            RunConfig(timeout_ms=0)
        with pytest.raises(ValidationError):
            RunConfig(input_timeout_ms=-1)

    def test_rejects_non_http_url(self) -> None:
        with pytest.raises(ValidationError):
            RunConfig(url="file:///etc/passwd")

    def test_bare_host_defaults_to_https(self) -> None:
        config = RunConfig(url="chat.example", desired_model="Model X", headless=True)
        assert config.url == "https://chat.example"

    def test_stable_polls_minimum_two(self) -> None:
        with pytest.raises(ValidationError):
            PollingConfig(stable_polls=1)

    def test_blank_model_means_keep_current(self) -> None:
        assert RunConfig(desired_model="  ").desired_model is None
        assert RunConfig(desired_model=" GPT-5 ").desired_model == "GPT-5"

    def test_frozen(self) -> None:
        config = RunConfig()
        with pytest.raises(ValidationError):
            config.headless = True


class TestResolveBrowserConfig:
    def test_none_returns_defaults(self) -> None:
        assert resolve_browser_config(None) is DEFAULT_BROWSER_CONFIG

    def test_passes_run_config_through(self) -> None:
        config = RunConfig(headless=True)
        assert resolve_browser_config(config) is config

    def test_mapping_ignores_none_values(self) -> None:
        config = resolve_browser_config({"headless": True, "desired_model": None, "url": None})
        assert config.headless is True
        assert config.url == CHATGPT_URL
        assert config.desired_model is None

    def test_nested_polling_override(self) -> None:
        config = resolve_browser_config({"polling": {"interval_ms": 250}})
        assert config.polling.interval_ms == 250
        assert config.polling.stable_polls == 2


class TestLoadConfig:
    def test_load_valid_config(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text(
            json.dumps({"desired_model": "GPT-5 Thinking", "headless": True, "polling": {"stable_polls": 3}}),
            encoding="utf-8",
        )

        result = load_config(config_file)
        assert result.success
        assert result.data is not None
        assert result.data.desired_model == "GPT-5 Thinking"
        assert result.data.polling.stable_polls == 3

    def test_load_missing_file_returns_defaults(self, tmp_path: Path) -> None:
        result = load_config(tmp_path / "nonexistent.json")
        assert result.success
        assert result.data == DEFAULT_BROWSER_CONFIG

    def test_load_invalid_json(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text("not json {{{", encoding="utf-8")

        result = load_config(config_file)
        assert not result.success
        assert result.error_code == "JSON_ERROR"

    def test_load_invalid_values(self, tmp_path: Path) -> None:
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"timeout_ms": -5}), encoding="utf-8")

        result = load_config(config_file)
        assert not result.success
        assert result.error_code == "VALIDATION_ERROR"


class TestParseDuration:
    @pytest.mark.parametrize(
        "value,expected",
        [("1500", 1500), ("1500ms", 1500), ("90s", 90_000), ("2m", 120_000), ("1h", 3_600_000), ("1.5s", 1500)],
    )
    def test_units(self, value: str, expected: int) -> None:
        assert parse_duration(value) == expected

    def test_numeric_uses_default_unit(self) -> None:
        assert parse_duration(3, default_unit="s") == 3000

    def test_rejects_garbage(self) -> None:
        with pytest.raises(ValueError):
            parse_duration("soon")


class TestTraceEnabled:
    def test_debug_flag(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(TRACE_ENV, raising=False)
        assert trace_enabled(RunConfig(debug=True))
        assert not trace_enabled(RunConfig())

    def test_env_var(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(TRACE_ENV, "1")
        assert trace_enabled(RunConfig())
