"""
Agent configuration.

Loads configuration from environment variables, an optional .env file and an
optional YAML file using pydantic-settings. Environment wins over YAML.
"""

import os
from functools import lru_cache
from typing import Dict, Literal, Tuple, Type

from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)


DEFAULT_CONFIG_FILE = "config.yaml"


class AgentSettings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Bind address of the agent HTTP API")
    port: int = Field(default=8080, ge=1, le=65535, description="HTTP API port")

    # Backend Configuration
    backend_url: str = Field(default="http://localhost:3001", description="Backend controller base URL")
    api_prefix: str = Field(default="/api/v1", description="Path prefix of the agent endpoints on the backend")
    registration_token: str = Field(default="default-token", description="Token presented at registration")
    registration_attempts: int = Field(default=3, ge=1, le=20, description="Registration attempts before giving up")
    request_timeout: float = Field(default=30.0, gt=0, description="Backend request timeout in seconds")
    result_report_attempts: int = Field(default=3, ge=1, le=10, description="Attempts for a job result report")
    base_retry_delay: float = Field(default=1.0, ge=0, le=10.0, description="Base retry delay in seconds")
    max_retry_delay: float = Field(default=10.0, ge=0, le=60.0, description="Maximum retry delay in seconds")

    # Loop Configuration
    heartbeat_interval: float = Field(default=30.0, gt=0, description="Heartbeat interval in seconds")
    poll_interval: float = Field(default=5.0, gt=0, description="Job poll interval in seconds")

    # Agent Identity
    tags: Dict[str, str] = Field(default_factory=dict, description="Labels advertised to the backend")

    # Runner Binaries
    k6_binary: str = Field(default="k6", description="Load-test runner executable")
    python_binary: str = Field(default="python3", description="Interpreter for python jobs")
    docker_binary: str = Field(default="docker", description="Container CLI for docker jobs")

    # Execution Configuration
    max_concurrent_jobs: int = Field(default=4, ge=1, le=256, description="Jobs allowed to run at once")
    process_kill_grace: float = Field(default=5.0, ge=0, description="Seconds between SIGTERM and SIGKILL")
    log_queue_size: int = Field(default=100, ge=1, description="Per-job live log queue capacity")

    # Retention Configuration
    task_retention_seconds: float = Field(default=3600.0, ge=0, description="How long finished tasks stay queryable")
    max_retained_tasks: int = Field(default=1000, ge=1, description="Upper bound on finished tasks kept")
    retention_interval: float = Field(default=60.0, gt=0, description="Retention sweep interval in seconds")

    # Logging Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: Literal["text", "json"] = Field(
        default="text", description="Logging format - text for human-readable, json for structured logs"
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    @field_validator("log_format", mode="before")
    @classmethod
    def normalize_log_format(cls, v: str) -> str:
        return v.lower() if isinstance(v, str) else v

    @field_validator("backend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("api_prefix")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and not v.startswith("/"):
            v = "/" + v
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        yaml_file = os.environ.get("AGENT_CONFIG_FILE", DEFAULT_CONFIG_FILE)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )


@lru_cache
def get_settings() -> AgentSettings:
    """Get the process-wide settings instance."""
    return AgentSettings()
