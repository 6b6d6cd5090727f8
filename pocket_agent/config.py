"""Configuration management for Pocket Agent."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from pocket_agent.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.pocket-agent/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful assistant with access to calculation, time, and weather tools. "
    "Use tools when appropriate to answer questions accurately."
)


class ModelConfig(BaseModel):
    """Generation engine configuration."""

    provider: str = "ollama"
    model: str = "gemma3:1b"
    base_url: str = "http://127.0.0.1:11434"
    temperature: float = 0.3
    top_k: int = 40
    top_p: float = 0.9
    max_tokens: int = 2048
    request_timeout: float = 120.0


class AgentConfig(BaseModel):
    """Turn loop and session lifecycle configuration."""

    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    max_turns: int = Field(default=5, ge=1)
    max_retries: int = Field(default=1, ge=0)
    response_timeout_ms: int = Field(default=30000, gt=0)
    max_tokens_before_reset: int = Field(default=1500, gt=0)
    history_window: int = Field(default=3, ge=0)
    max_session_recreate_attempts: int = Field(default=3, ge=0)
    repeat_threshold: int = Field(default=2, ge=1)
    summary_messages: int = Field(default=2, ge=0)
    tool_timeout_seconds: float = Field(default=30.0, gt=0)
    fill_missing_arguments: bool = True


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Pocket Agent."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="POCKET_AGENT_",
        env_file=".env",
        env_nested_delimiter="__",
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
        # YAML values arrive as init kwargs; environment wins over them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file.

        Raises:
            ConfigurationError if the file is not valid YAML or fails validation
        """
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config root in {config_path} must be a mapping")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
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
