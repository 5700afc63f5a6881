"""
Configuration system using Pydantic for type-safe settings management.

This module provides the configuration classes for every collaborator of the
pipeline (tracker, hosting service, completion backend, code agent), the
local execution runtime, and the administrative API. Settings are loaded
from YAML with ``${VAR}`` environment interpolation and may be overridden by
``KHITOMER_``-prefixed environment variables.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from khitomer.exceptions import NON_RETRYABLE_ERRORS, ConfigurationError
from khitomer.utils.retry import RetryPolicy


class TrackerConfig(BaseModel):
    """Jira tracker configuration."""

    base_url: HttpUrl = Field(..., description="Base URL of the Jira instance")
    username: str = Field(..., description="Jira account used for API calls")
    api_token: SecretStr = Field(..., description="Jira API token")
    project_key: str = Field(..., description="Project key searched for ready tickets")
    custom_field: str = Field(
        default="Repository",
        description="Display name of the custom field holding owner/repo or a repository URL",
    )
    status_filter: list[str] = Field(
        default_factory=lambda: ["Ready for Development"],
        description="Statuses queried on every poll, in order",
    )
    poll_interval: float = Field(default=300.0, gt=0, description="Seconds between poll cycles")
    default_base_branch: str = Field(default="main", description="Base branch assigned to new tasks")
    review_status: str | None = Field(
        default=None,
        description="Status the ticket is moved to once its review request is open",
    )
    dedup_state_file: str | None = Field(
        default=None,
        description="Persist dispatched ticket ids here to survive restarts (in-memory when unset)",
    )
    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    @field_validator("status_filter")
    @classmethod
    def validate_status_filter(cls, value: list[str]) -> list[str]:
        statuses = [status.strip() for status in value if status.strip()]
        if not statuses:
            raise ValueError("status_filter must contain at least one status")
        return statuses


class HostingConfig(BaseModel):
    """GitHub hosting configuration."""

    api_url: str = Field(default="https://api.github.com", description="GitHub API base URL")
    web_url: str = Field(default="https://github.com", description="GitHub web/clone base URL")
    token: SecretStr = Field(..., description="Token used for cloning, pushing, and pull requests")
    workspace_root: str = Field(default=".khitomer/workspaces", description="Root for per-run workspaces")
    branch_prefix: str = Field(default="khitomer", description="Namespace prefix of feature branches")
    author_name: str = Field(default="Khitomer Bot", description="Commit author name")
    author_email: str = Field(default="khitomer@example.com", description="Commit author email")


class CompletionConfig(BaseModel):
    """OpenAI-compatible completion backend configuration."""

    base_url: str = Field(default="https://api.openai.com/v1", description="API base URL")
    api_key: SecretStr | None = Field(default=None, description="Bearer token for the API")
    model: str = Field(default="gpt-4-turbo-preview", description="Model identifier")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature")
    timeout: float = Field(default=120.0, gt=0, description="Request timeout in seconds")


class CodeAgentConfig(BaseModel):
    """External code agent used by the apply-changes step."""

    command: list[str] = Field(
        default_factory=lambda: ["claude", "--print", "--dangerously-skip-permissions"],
        description="Agent CLI invocation; the prompt is written to its stdin",
    )
    timeout: float = Field(default=1800.0, gt=0, description="Seconds before the agent is killed")


class RetryConfig(BaseModel):
    """Activity retry policy."""

    initial_interval: float = Field(default=1.0, gt=0)
    backoff_coefficient: float = Field(default=2.0, ge=1.0)
    maximum_interval: float = Field(default=60.0, gt=0)
    maximum_attempts: int = Field(default=3, ge=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            initial_interval=self.initial_interval,
            backoff_coefficient=self.backoff_coefficient,
            maximum_interval=self.maximum_interval,
            maximum_attempts=self.maximum_attempts,
            non_retryable=NON_RETRYABLE_ERRORS,
        )


class RuntimeConfig(BaseModel):
    """Local execution runtime configuration."""

    task_queue: str = Field(default="implementation-queue", description="Queue/topic name runs are issued on")
    state_directory: str = Field(default=".khitomer/runs", description="Directory for run state files")
    queue_size: int = Field(default=10, ge=1, description="Capacity of the intake queue")
    activity_timeout: float = Field(default=600.0, gt=0, description="Per-attempt step timeout in seconds")
    test_timeout: float = Field(default=900.0, gt=0, description="Timeout for a project test run")
    retry: RetryConfig = Field(default_factory=RetryConfig)


class ApiConfig(BaseModel):
    """Administrative HTTP API configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)


class KhitomerSettings(BaseSettings):
    """Main settings object.

    Combines all configuration sections and provides loading from YAML files
    with environment variable interpolation.
    """

    model_config = SettingsConfigDict(
        env_prefix="KHITOMER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    tracker: TrackerConfig
    hosting: HostingConfig
    completion: CompletionConfig = Field(default_factory=CompletionConfig)
    code_agent: CodeAgentConfig = Field(default_factory=CodeAgentConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @property
    def state_dir(self) -> Path:
        return Path(self.runtime.state_directory)

    @property
    def workspace_root(self) -> Path:
        return Path(self.hosting.workspace_root)

    @classmethod
    def from_yaml(cls, config_path: str) -> KhitomerSettings:
        """Load settings from YAML file with environment variable interpolation.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            KhitomerSettings instance

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
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports ``${VAR_NAME}`` (required) and ``${VAR_NAME:-default}``.
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
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
