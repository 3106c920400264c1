"""
Configuration system using Pydantic for type-safe settings management.

Settings are read from a YAML file with ``${VAR}`` / ``${VAR:-default}``
environment interpolation, and can be overridden with ``MAGAZINE_``-prefixed
environment variables (``MAGAZINE_DATABASE__PATH=/data/magazine.db``).
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from magazine_pipeline.engine.machine import Stage
from magazine_pipeline.engine.recovery import RetryOverride
from magazine_pipeline.exceptions import ConfigurationError


class DatabaseConfig(BaseModel):
    """SQLite store location."""

    path: str = Field(default="magazine.db", description="Path to the SQLite database file")
    wal: bool = Field(default=True, description="Enable write-ahead logging")


class GenerationConfig(BaseModel):
    """OpenAI-compatible generation endpoint."""

    base_url: str = Field(default="https://api.openai.com/v1", description="Chat-completions API base URL")
    model: str = Field(default="gpt-4o-mini", description="Model identifier")
    api_key: SecretStr | None = Field(default=None, description="API key (supports ${ENV} references)")
    timeout: float = Field(default=120.0, gt=0, description="Request timeout in seconds")
    topic_count: int = Field(default=3, ge=1, le=10, description="Topic candidates proposed per issue")


class NotificationConfig(BaseModel):
    """Where progress messages and label updates are sent."""

    webhook_url: str | None = Field(default=None, description="Webhook receiving notifications; log only when unset")
    timeout: float = Field(default=10.0, gt=0, description="Webhook timeout in seconds")


class ApiConfig(BaseModel):
    """Layout bridge HTTP server."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=3000, ge=1, le=65535, description="Bind port")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")


class WorkflowConfig(BaseModel):
    """Stage flow options."""

    include_image_generation: bool = Field(default=False, description="Insert IMAGE_GENERATION before layout")
    label_prefix: str = Field(default="Magazine", description="Prefix of issue labels")


class PipelineSettings(BaseSettings):
    """Main pipeline settings.

    This class combines all configuration sections and provides a loader for
    YAML files with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="MAGAZINE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    retry: dict[Stage, RetryOverride] = Field(
        default_factory=dict, description="Per-stage retry overrides; unset fields keep the stage default"
    )

    @property
    def database_path(self) -> Path:
        return Path(self.database.path)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> PipelineSettings:
        """Load settings from YAML file with environment variable interpolation.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            PipelineSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
