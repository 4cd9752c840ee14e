"""
tests/unit/test_config.py — Settings / config loading Unit Tests

Covers:
  - YAML + env merging, CLI section overrides
  - per-field validators (provider, scope, paths, limits)
  - validate_all() cross-field checks
"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from llamacli.config.settings import ConfigError, Settings, get_settings, load_settings


def write_config(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


# ─────────────────────────────────────────────────────────────────────────────
# Loading
# ─────────────────────────────────────────────────────────────────────────────


class TestLoadSettings:
    def test_defaults_when_file_missing(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml")
        assert settings.llm.provider == "ollama"
        assert settings.agent.max_tool_rounds == 10
        assert settings.shell.allowlist_scope == "binary"
        assert settings.agent.replay_thinking is False

    def test_yaml_values_applied(self, tmp_path):
        path = write_config(tmp_path, {
            "llm": {"provider": "vllm", "model": "qwen2.5", "temperature": 0.2},
            "shell": {"timeout_seconds": 5, "allowlist_scope": "command"},
            "unrelated": {"ignored": True},
        })
        settings = load_settings(path)
        assert settings.llm.provider == "vllm"
        assert settings.llm.model == "qwen2.5"
        assert settings.shell.timeout_seconds == 5
        assert settings.shell.allowlist_scope == "command"
        assert settings.llm_base_url == "http://localhost:8000/v1"

    def test_overrides_merge_over_yaml(self, tmp_path):
        path = write_config(tmp_path, {"llm": {"provider": "ollama", "model": "llama3.1", "temperature": 0.1}})
        settings = load_settings(path, llm={"model": "mistral"}, shell=None)
        assert settings.llm.model == "mistral"
        assert settings.llm.temperature == 0.1

    def test_env_config_path(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"agent": {"name": "FromEnv"}})
        monkeypatch.setenv("LLAMACLI_CONFIG", str(path))
        assert load_settings().agent.name == "FromEnv"

    def test_get_settings_returns_loaded_instance(self, tmp_path):
        loaded = load_settings(tmp_path / "missing.yaml")
        assert get_settings() is loaded

    def test_api_key_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        path = write_config(tmp_path, {"llm": {"provider": "openai", "model": "gpt-4o-mini"}})
        settings = load_settings(path)
        assert settings.llm_api_key_for_provider == "sk-test"
        settings.validate_all()

    def test_generic_key_overrides_provider_key(self, tmp_path, monkeypatch):
        monkeypatch.setenv("OPENROUTER_API_KEY", "or-key")
        monkeypatch.setenv("LLAMACLI_API_KEY", "generic")
        path = write_config(tmp_path, {"llm": {"provider": "openrouter"}})
        assert load_settings(path).llm_api_key_for_provider == "generic"

    def test_paths_expanded(self, tmp_path):
        settings = load_settings(tmp_path / "missing.yaml")
        assert "~" not in str(settings.session_dir)
        assert "~" not in str(settings.log_dir)


# ─────────────────────────────────────────────────────────────────────────────
# Field validators
# ─────────────────────────────────────────────────────────────────────────────


class TestFieldValidation:
    @pytest.mark.parametrize("section,values", [
        ("llm", {"provider": "skynet"}),
        ("llm", {"temperature": 3.5}),
        ("llm", {"max_tokens": 0}),
        ("shell", {"allowlist_scope": "everything"}),
        ("shell", {"history_size": 0}),
        ("agent", {"max_tool_rounds": 0}),
        ("tools", {"allowed_paths": ["/etc"]}),
        ("tools", {"max_result_chars": 10}),
        ("session", {"backend": "redis"}),
        ("logging", {"level": "LOUD"}),
    ])
    def test_invalid_values_rejected(self, tmp_path, section, values):
        path = write_config(tmp_path, {section: values})
        with pytest.raises(ValidationError):
            load_settings(path)

    def test_log_level_normalised(self, tmp_path):
        path = write_config(tmp_path, {"logging": {"level": "debug"}})
        assert load_settings(path).log_level == "DEBUG"


# ─────────────────────────────────────────────────────────────────────────────
# validate_all
# ─────────────────────────────────────────────────────────────────────────────


class TestValidateAll:
    def test_local_provider_needs_no_key(self):
        Settings().validate_all()

    def test_openai_without_key(self, tmp_path):
        path = write_config(tmp_path, {"llm": {"provider": "openai"}})
        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            load_settings(path).validate_all()

    def test_compatible_needs_base_url(self, tmp_path):
        path = write_config(tmp_path, {"llm": {"provider": "openai-compatible"}})
        with pytest.raises(ConfigError, match="base_url"):
            load_settings(path).validate_all()

    def test_idle_longer_than_total(self, tmp_path):
        path = write_config(tmp_path, {"llm": {"idle_timeout_seconds": 100, "total_timeout_seconds": 50}})
        with pytest.raises(ConfigError, match="idle_timeout_seconds"):
            load_settings(path).validate_all()

    def test_blocked_working_dir(self, tmp_path):
        path = write_config(tmp_path, {"shell": {"working_dir": "/etc"}})
        with pytest.raises(ConfigError, match="protected system directory"):
            load_settings(path).validate_all()

    def test_all_problems_reported_together(self, tmp_path):
        path = write_config(tmp_path, {
            "llm": {"provider": "openrouter", "idle_timeout_seconds": 100, "total_timeout_seconds": 50},
        })
        with pytest.raises(ConfigError) as exc:
            load_settings(path).validate_all()
        assert "2 configuration problem(s)" in str(exc.value)


# ─────────────────────────────────────────────────────────────────────────────
# Environment
# ─────────────────────────────────────────────────────────────────────────────


class TestEnvironment:
    def test_login_shell_variable_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHELL", "/bin/bash")
        monkeypatch.setenv("LOGGING", "verbose")
        settings = load_settings(tmp_path / "missing.yaml")
        assert settings.shell.timeout_seconds == 30
        assert Settings().shell.allowlist_scope == "binary"

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"llm": {"model": "from-yaml", "temperature": 0.1}})
        monkeypatch.setenv("LLAMACLI_LLM__MODEL", "from-env")
        settings = load_settings(path)
        assert settings.llm.model == "from-env"
        assert settings.llm.temperature == 0.1

    def test_env_section_without_yaml_entry(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"llm": {"model": "from-yaml"}})
        monkeypatch.setenv("LLAMACLI_SHELL__TIMEOUT_SECONDS", "7")
        assert load_settings(path).shell.timeout_seconds == 7

    def test_cli_overrides_beat_env(self, tmp_path, monkeypatch):
        path = write_config(tmp_path, {"llm": {"model": "from-yaml"}})
        monkeypatch.setenv("LLAMACLI_LLM__MODEL", "from-env")
        assert load_settings(path, llm={"model": "from-flag"}).llm.model == "from-flag"
