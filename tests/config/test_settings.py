"""
Tests for loading and validating process-level relay settings.
"""

import pytest
from pydantic import ValidationError

from gemini_relay.config import (
    DEFAULT_FALLBACK_MODELS,
    DEFAULT_GREETING,
    RelaySettings,
    load_settings,
    validate_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "GEMINI_API_KEY", "WS_HOST", "WS_PORT", "GEMINI_MODEL", "METRICS_PORT",
        "RELAY_CONFIG_PATH", "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


class TestLoadSettings:

    def test_defaults_without_file(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "AIza-test")

        settings = load_settings()

        assert settings.host == "0.0.0.0"
        assert settings.port == 8888
        assert settings.api_key == "AIza-test"
        assert settings.model_override is None
        assert settings.fallback_models == DEFAULT_FALLBACK_MODELS
        assert settings.default_greeting == DEFAULT_GREETING
        assert settings.setup_timeout_sec is None

    def test_yaml_file_with_env_overrides(self, tmp_path, monkeypatch):
        config_file = tmp_path / "relay.yaml"
        config_file.write_text(
            "host: 127.0.0.1\n"
            "port: 9000\n"
            "api_key: AIza-committed-by-mistake\n"
            "fallback_models:\n"
            "  - gemini-a\n"
            "setup_timeout_sec: 5\n"
        )
        monkeypatch.setenv("WS_PORT", "9001")
        monkeypatch.setenv("GEMINI_MODEL", "gemini-preferred")

        settings = load_settings(str(config_file))

        assert settings.host == "127.0.0.1"
        assert settings.port == 9001
        assert settings.api_key is None
        assert settings.candidate_models() == ["gemini-preferred", "gemini-a"]
        assert settings.setup_timeout_sec == 5

    def test_path_from_environment(self, tmp_path, monkeypatch):
        config_file = tmp_path / "relay.yaml"
        config_file.write_text("port: 7000\n")
        monkeypatch.setenv("RELAY_CONFIG_PATH", str(config_file))

        assert load_settings().port == 7000

    def test_missing_explicit_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_wrong_type_raises(self, tmp_path):
        config_file = tmp_path / "relay.yaml"
        config_file.write_text("port: not-a-port\n")

        with pytest.raises(ValidationError):
            load_settings(str(config_file))


class TestCandidateModels:

    def test_override_first(self):
        settings = RelaySettings(model_override="gemini-x", fallback_models=["gemini-a", "gemini-b"])

        assert settings.candidate_models() == ["gemini-x", "gemini-a", "gemini-b"]

    def test_duplicates_removed(self):
        settings = RelaySettings(model_override="gemini-b", fallback_models=["gemini-a", "gemini-b", "gemini-a"])

        assert settings.candidate_models() == ["gemini-b", "gemini-a"]

    def test_without_override(self):
        assert RelaySettings().candidate_models() == DEFAULT_FALLBACK_MODELS


class TestValidateSettings:

    def test_valid_settings(self):
        errors, warnings = validate_settings(RelaySettings(api_key="k", host="127.0.0.1"))

        assert errors == []
        assert warnings == []

    def test_missing_key_is_error(self):
        errors, _ = validate_settings(RelaySettings(host="127.0.0.1"))

        assert any("GEMINI_API_KEY" in e for e in errors)

    def test_no_models_is_error(self):
        errors, _ = validate_settings(RelaySettings(api_key="k", fallback_models=[]))

        assert "No candidate models configured" in errors

    def test_port_clash_is_error(self):
        errors, _ = validate_settings(RelaySettings(api_key="k", port=9000, metrics_port=9000))

        assert any("METRICS_PORT" in e for e in errors)

    def test_warnings(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")

        _, warnings = validate_settings(RelaySettings(api_key="k"))

        assert len(warnings) == 2
