"""
config/settings.py — llamacli Runtime Settings

Merges config.yaml (structure/defaults) with .env and LLAMACLI_-prefixed
environment variables; the environment wins over the file.
Pydantic-powered: all fields are validated and typed.

  - ShellConfig rejects unknown allowlist scopes at parse time
  - ToolsConfig rejects allowed_paths pointing at system directories
  - validate_all() performs cross-field startup validation and raises
    ConfigError with every problem found
  - load_settings() respects LLAMACLI_CONFIG when no explicit path is given
"""

from __future__ import annotations

import os
import threading as _threading
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_PROVIDERS = {"openai", "anthropic", "gemini", "ollama", "openrouter", "vllm", "openai-compatible"}
_VALID_ALLOWLIST_SCOPES = {"binary", "command"}
_VALID_SESSION_BACKENDS = {"file", "memory"}

_BLOCKED_PATH_PREFIXES: tuple[str, ...] = (
    "/etc", "/proc", "/sys", "/dev", "/boot",
    "/private/etc",
    "/usr", "/bin", "/sbin", "/lib", "/lib64",
)

# provider -> (env var, Settings attribute, default base_url)
_PROVIDER_KEYS: dict[str, tuple[Optional[str], Optional[str], Optional[str]]] = {
    "openai":            ("OPENAI_API_KEY",     "openai_api_key",     None),
    "anthropic":         ("ANTHROPIC_API_KEY",  "anthropic_api_key",  None),
    "gemini":            ("GEMINI_API_KEY",     "gemini_api_key",     None),
    "openrouter":        ("OPENROUTER_API_KEY", "openrouter_api_key", "https://openrouter.ai/api/v1"),
    "ollama":            (None,                 None,                 "http://localhost:11434/v1"),
    "vllm":              (None,                 None,                 "http://localhost:8000/v1"),
    "openai-compatible": (None,                 None,                 None),
}


def _is_blocked_system_path(p: str) -> bool:
    try:
        resolved = str(Path(p).expanduser().resolve())
    except (ValueError, OSError):
        return False
    return any(
        resolved == prefix or resolved.startswith(prefix + "/")
        for prefix in _BLOCKED_PATH_PREFIXES
    )


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    name: str = "LlamaCLI"
    max_tool_rounds: int = 10
    max_turn_timeout_seconds: float = 600.0
    replay_thinking: bool = False
    system_prompt: Optional[str] = None

    @field_validator("max_tool_rounds")
    @classmethod
    def _positive_rounds(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent.max_tool_rounds must be >= 1")
        return v

    @field_validator("max_turn_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("agent.max_turn_timeout_seconds must be > 0")
        return v


class LLMRetryConfig(BaseModel):
    """Exponential backoff for transient errors while opening a stream."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0


class LLMConfig(BaseModel):
    provider: str = "ollama"
    model: str = "llama3.1"
    base_url: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096
    idle_timeout_seconds: float = 60.0
    total_timeout_seconds: float = 300.0
    retry: LLMRetryConfig = Field(default_factory=LLMRetryConfig)

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        if v not in _VALID_PROVIDERS:
            raise ValueError(
                f"llm.provider '{v}' is not supported. "
                f"Supported: {sorted(_VALID_PROVIDERS)}"
            )
        return v

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.max_tokens must be >= 1")
        return v

    @field_validator("idle_timeout_seconds", "total_timeout_seconds")
    @classmethod
    def _positive_stream_timeouts(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("llm stream timeouts must be > 0")
        return v


class ShellConfig(BaseModel):
    timeout_seconds: float = 30.0
    history_size: int = 100
    allowlist_scope: str = "binary"
    working_dir: str = "."
    max_output_chars: int = 20_000

    @field_validator("allowlist_scope")
    @classmethod
    def _valid_scope(cls, v: str) -> str:
        if v not in _VALID_ALLOWLIST_SCOPES:
            raise ValueError(
                f"shell.allowlist_scope must be one of "
                f"{sorted(_VALID_ALLOWLIST_SCOPES)}, got '{v}'"
            )
        return v

    @field_validator("history_size")
    @classmethod
    def _positive_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("shell.history_size must be >= 1")
        return v

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("shell.timeout_seconds must be > 0")
        return v


class ToolsConfig(BaseModel):
    enable_filesystem: bool = True
    enable_shell: bool = True
    enable_network: bool = True
    allowed_paths: list[str] = Field(default_factory=lambda: ["."])
    timeout_seconds: float = 60.0
    max_result_chars: int = 8000

    @field_validator("allowed_paths")
    @classmethod
    def _safe_allowed_paths(cls, v: list[str]) -> list[str]:
        for p in v:
            if _is_blocked_system_path(p):
                raise ValueError(
                    f"tools.allowed_paths contains '{p}', which is a "
                    f"protected system directory. Remove it."
                )
        return v

    @field_validator("max_result_chars")
    @classmethod
    def _positive_result_chars(cls, v: int) -> int:
        if v < 100:
            raise ValueError("tools.max_result_chars must be >= 100")
        return v


class SessionConfig(BaseModel):
    backend: str = "file"
    storage_dir: str = "~/.llamacli/sessions"

    @field_validator("backend")
    @classmethod
    def _valid_backend(cls, v: str) -> str:
        if v not in _VALID_SESSION_BACKENDS:
            raise ValueError(
                f"session.backend must be one of "
                f"{sorted(_VALID_SESSION_BACKENDS)}, got '{v}'"
            )
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "~/.llamacli/logs"
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    llamacli runtime settings.

    Priority (highest to lowest):
      1. Explicit overrides (CLI flags, constructor kwargs)
      2. Environment variables (LLAMACLI_ prefix, "__" for nesting,
         e.g. LLAMACLI_LLM__MODEL)
      3. .env file
      4. config.yaml
      5. Field defaults
    """

    model_config = SettingsConfigDict(
        env_prefix="LLAMACLI_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from env / .env ---------------------------------------------
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    anthropic_api_key: Optional[str] = Field(default=None, validation_alias="ANTHROPIC_API_KEY")
    gemini_api_key: Optional[str] = Field(default=None, validation_alias="GEMINI_API_KEY")
    openrouter_api_key: Optional[str] = Field(default=None, validation_alias="OPENROUTER_API_KEY")
    llm_api_key: Optional[str] = Field(default=None, validation_alias="LLAMACLI_API_KEY")

    # -- Structured config (from config.yaml) --------------------------------
    agent: AgentConfig = Field(default_factory=AgentConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("agent", mode="before")
    @classmethod
    def _coerce_agent(cls, v: Any) -> Any:
        return AgentConfig(**v) if isinstance(v, dict) else v

    @field_validator("llm", mode="before")
    @classmethod
    def _coerce_llm(cls, v: Any) -> Any:
        return LLMConfig(**v) if isinstance(v, dict) else v

    @field_validator("shell", mode="before")
    @classmethod
    def _coerce_shell(cls, v: Any) -> Any:
        return ShellConfig(**v) if isinstance(v, dict) else v

    @field_validator("tools", mode="before")
    @classmethod
    def _coerce_tools(cls, v: Any) -> Any:
        return ToolsConfig(**v) if isinstance(v, dict) else v

    @field_validator("session", mode="before")
    @classmethod
    def _coerce_session(cls, v: Any) -> Any:
        return SessionConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        sources = [init_settings, env_settings, dotenv_settings]
        yaml_path = _yaml_path.get()
        if yaml_path is not None:
            sources.append(YamlConfigSettingsSource(settings_cls, yaml_file=yaml_path))
        sources.append(file_secret_settings)
        return tuple(sources)

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir).expanduser()

    @property
    def session_dir(self) -> Path:
        return Path(self.session.storage_dir).expanduser()

    @property
    def llm_api_key_for_provider(self) -> Optional[str]:
        """API key for the configured provider; LLAMACLI_API_KEY overrides."""
        if self.llm_api_key:
            return self.llm_api_key
        _, attr, _ = _PROVIDER_KEYS[self.llm.provider]
        return getattr(self, attr) if attr else None

    @property
    def llm_base_url(self) -> Optional[str]:
        if self.llm.base_url:
            return self.llm.base_url
        return _PROVIDER_KEYS[self.llm.provider][2]

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic validators catch type/value errors at parse time; this
        catches cross-field problems (missing API key for the chosen provider,
        a base_url-less generic endpoint, timeouts that contradict each other).
        """
        errors: list[str] = []

        provider = self.llm.provider
        env_name, _, _ = _PROVIDER_KEYS[provider]
        if env_name and not self.llm_api_key_for_provider:
            errors.append(
                f"LLM provider '{provider}' requires {env_name} (or "
                f"LLAMACLI_API_KEY) to be set in your environment or .env file."
            )

        if provider == "openai-compatible" and not self.llm.base_url:
            errors.append(
                "llm.provider 'openai-compatible' requires llm.base_url to be set."
            )

        if self.llm.idle_timeout_seconds > self.llm.total_timeout_seconds:
            errors.append(
                "llm.idle_timeout_seconds must not exceed llm.total_timeout_seconds."
            )

        wd = self.shell.working_dir
        if _is_blocked_system_path(wd):
            errors.append(
                f"shell.working_dir '{wd}' points to a protected system directory."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nllamacli startup failed: {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in your config.yaml or .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_KNOWN_SECTIONS = {"agent", "llm", "shell", "tools", "session", "logging"}

# config.yaml path read by Settings.settings_customise_sources during load
_yaml_path: ContextVar[Optional[Path]] = ContextVar("llamacli_yaml_path", default=None)

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config)
      2. LLAMACLI_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("LLAMACLI_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def _build(config_path: str | Path | None, overrides: dict[str, Any]) -> Settings:
    token = _yaml_path.set(_resolve_config_path(config_path))
    try:
        return Settings(**overrides)
    finally:
        _yaml_path.reset(token)


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> Settings:
    """
    Load settings from config.yaml, .env and the environment.

    overrides are section dicts deep-merged over every other source (used by
    CLI flags such as --provider / --model).
    """
    global _singleton
    init_kwargs = {
        section: values
        for section, values in overrides.items()
        if section in _KNOWN_SECTIONS and values
    }
    instance = _build(config_path, init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """Return the global Settings, loading from the default path on first use."""
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = _build(None, {})
        return _singleton
