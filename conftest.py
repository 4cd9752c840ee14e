"""
Root conftest — isolate API key environment variables and .env loading so
Settings() behaves the same on a developer machine and in CI.
"""
import pytest

_API_KEY_ENV_VARS = [
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "GEMINI_API_KEY",
    "OPENROUTER_API_KEY",
    "LLAMACLI_API_KEY",
    "LLAMACLI_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_api_keys_from_env(monkeypatch):
    """Remove API key env vars for every test so Settings() behaves as if no
    keys are present unless the test explicitly provides them. Also disables
    .env file loading so local developer .env files don't leak into tests."""
    for var in _API_KEY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    import llamacli.config.settings as settings_module
    patched_config = dict(settings_module.Settings.model_config)
    patched_config["env_file"] = None
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
