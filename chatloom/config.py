"""Configuration management for chatloom."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Paths
DEFAULT_CONFIG_PATH = Path("~/.chatloom/config.yaml").expanduser()
DEFAULT_RECORDING_PATH = Path("~/.chatloom/recordings.db").expanduser()
LOCAL_CONFIG_FILENAME = "chatloom.yaml"


class ModelConfig(BaseModel):
    """Primary/fallback model selection."""

    name: str = "gemini-2.5-pro"
    fallback_model: str = "gemini-2.5-flash"
    auth_type: Literal["api_key", "oauth", "local"] = "api_key"
    fallback_enabled: bool = True


class RetryConfig(BaseModel):
    """Invalid-stream retry policy.

    Primary model: up to ``primary_max_attempts`` tries with a linear backoff
    of ``primary_initial_delay_seconds * attempt``. Fallback mode: up to
    ``fallback_max_attempts`` tries with a fixed ``fallback_delay_seconds`` wait.
    """

    primary_max_attempts: int = 5
    fallback_max_attempts: int = 2
    primary_initial_delay_seconds: float = 2.0
    fallback_delay_seconds: float = 1.0
    quota_failure_threshold: int = 2


class StreamConfig(BaseModel):
    """Per-chunk read timeouts and runaway-stream guard."""

    first_chunk_timeout_seconds: float = 30.0
    local_first_chunk_timeout_seconds: float = 90.0
    chunk_timeout_seconds: float = 30.0
    fallback_chunk_timeout_seconds: float = 10.0
    max_chunks: int = 1000


class ContextConfig(BaseModel):
    """Context window budgeting."""

    token_limit: int = 0
    safety_ratio: float = 0.7
    preserved_entries: int = 4
    tool_result_trim_chars: int = 1000
    tool_result_preview_chars: int = 200


class ToolsConfig(BaseModel):
    """Tool scheduling configuration."""

    approval_mode: Literal["default", "auto_edit", "yolo"] = "default"
    timeout_seconds: float = 120.0


class RecordingConfig(BaseModel):
    """Chat recording configuration."""

    enabled: bool = False
    path: str = str(DEFAULT_RECORDING_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for chatloom."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="CHATLOOM_",
        env_file=".env",
        env_nested_delimiter="__",
    )

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

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration; environment variables apply to sections the YAML file leaves unset."""
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
