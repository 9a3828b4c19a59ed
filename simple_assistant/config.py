"""Configuration management for Simple Assistant."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.simple-assistant/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

HISTORY_LIMIT_MIN = 10
HISTORY_LIMIT_MAX = 50

# Common env vars consulted when a provider key is left empty.
_PROVIDER_ENV_KEYS: dict[str, tuple[str, ...]] = {
    "openai": ("OPENAI_API_KEY",),
    "gemini": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "claude": ("ANTHROPIC_API_KEY",),
}


def default_history_path() -> Path:
    """Return the transcript snapshot location inside the user cache dir."""
    cache_root = os.environ.get("XDG_CACHE_HOME") or "~/.cache"
    return Path(cache_root).expanduser() / "simple-ai-assistant" / "history.json"


@dataclass(frozen=True)
class ProviderConfig:
    """Credentials and model for a single provider call."""

    provider: str
    api_key: str
    model: str = ""


class ProviderEntryConfig(BaseModel):
    """API key and model for one provider."""

    api_key: str = ""
    model: str = ""


class ProvidersConfig(BaseModel):
    """Provider selection and per-provider credentials."""

    active: str = "gemini"
    openai: ProviderEntryConfig = Field(default_factory=ProviderEntryConfig)
    gemini: ProviderEntryConfig = Field(default_factory=ProviderEntryConfig)
    claude: ProviderEntryConfig = Field(default_factory=ProviderEntryConfig)

    @field_validator("active", mode="before")
    @classmethod
    def _normalize_active(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    def entry(self, name: str) -> ProviderEntryConfig | None:
        """Return the entry for a provider name, or None when unknown."""
        value = getattr(self, name, None) if name in _PROVIDER_ENV_KEYS else None
        return value if isinstance(value, ProviderEntryConfig) else None


class HistoryConfig(BaseModel):
    """Transcript retention configuration."""

    limit: int = 20
    path: str = Field(default_factory=lambda: str(default_history_path()))

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        try:
            limit = int(value)
        except (TypeError, ValueError):
            return 20
        return max(HISTORY_LIMIT_MIN, min(HISTORY_LIMIT_MAX, limit))


class CommandsConfig(BaseModel):
    """Command execution configuration."""

    timeout: int = 60
    privilege_helper: str = "pkexec"
    terminate_grace: float = 2.0


class DeviceInfoConfig(BaseModel):
    """Device info sharing configuration."""

    share: bool = False


class HttpConfig(BaseModel):
    """HTTP client configuration."""

    timeout: float = 60.0


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Simple Assistant."""

    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    device_info: DeviceInfoConfig = Field(default_factory=DeviceInfoConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="SIMPLE_ASSISTANT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Env vars and .env win over values read from YAML.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @model_validator(mode="after")
    def _fill_keys_from_env(self) -> "Config":
        for name, env_keys in _PROVIDER_ENV_KEYS.items():
            entry = self.providers.entry(name)
            if entry is None or entry.api_key:
                continue
            for env_key in env_keys:
                value = os.environ.get(env_key, "").strip()
                if value:
                    entry.api_key = value
                    break
        return self

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; environment variables override YAML values."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def provider_config(self, provider: str | None = None) -> ProviderConfig:
        """Return the credentials for the active (or named) provider.

        Unknown provider names yield an empty key and model; the provider
        adapter reports them when the call is made.
        """
        name = (provider or self.providers.active or "").strip().lower()
        entry = self.providers.entry(name)
        if entry is None:
            return ProviderConfig(provider=name, api_key="", model="")
        return ProviderConfig(provider=name, api_key=entry.api_key.strip(), model=entry.model.strip())

    def resolved_history_path(self) -> Path:
        """Expand the configured transcript snapshot path."""
        return Path(self.history.path).expanduser()


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
