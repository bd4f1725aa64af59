"""Configuration management for the git pull agent."""

import os
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Listener
    git_pull_port: int = Field(default=3002, ge=1, le=65535, description="Listen port")
    git_pull_host: str = Field(default="0.0.0.0", description="Listen host")
    update_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret sent to the status sink as X-Update-Secret",
    )

    # Managed application
    app_dir: str = Field(
        default_factory=os.getcwd, description="Working directory of the managed app"
    )
    env_file_name: str = Field(default=".env", description="Config file kept across updates")
    git_remote: str = Field(default="origin", description="Remote to pull from")
    git_branch: str = Field(default="main", description="Branch to pull")

    # Runtime discovery
    npm_path: str = Field(default="", description="Explicit npm executable override")
    nvm_dir: str = Field(default="~/.nvm", description="nvm installation directory")
    node_major_version: int = Field(default=20, ge=1, description="Preferred Node major")
    node_fallback_major_version: int = Field(
        default=18, ge=1, description="Older Node major tried after the preferred one"
    )
    critical_dependency: str = Field(
        default="vite", description="Package that must be installed before building"
    )

    # Timeouts
    command_timeout_seconds: float = Field(default=300, gt=0)
    install_timeout_seconds: float = Field(default=1200, gt=0)
    status_timeout_seconds: float = Field(default=10, gt=0)

    # Status sink
    status_sink_url: str = Field(default="", description="Endpoint receiving status pushes")
    status_sink_api_key: SecretStr = Field(
        default=SecretStr(""), description="API key / bearer token for the status sink"
    )
    version_sync_url: str = Field(default="", description="Endpoint receiving commit SHAs")
    dead_letter_path: str = Field(
        default="", description="JSON-lines file for status pushes that could not be sent"
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=False, description="Also write JSON logs to a file")
    log_directory: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    log_file_backup_count: int = Field(default=5, ge=0)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def app_path(self) -> Path:
        return Path(self.app_dir).expanduser()

    @property
    def env_file_path(self) -> Path:
        """Path of the live config file inside the managed app."""
        return self.app_path / self.env_file_name

    @property
    def log_file_path(self) -> str:
        return str(Path(self.log_directory) / "git_pull_agent.log")

    @property
    def backend_reporting(self) -> bool:
        """Check if status pushes have somewhere to go."""
        return bool(self.status_sink_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
