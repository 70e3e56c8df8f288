"""Service configuration using pydantic-settings.

This module defines the AutoPRSettings class that reads configuration
from environment variables with the AUTOPR_ prefix. Required fields
must be set for the service to start; a missing webhook secret or token
signing secret is a fatal configuration error, not a runtime failure.
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AutoPRSettings(BaseSettings):
    """Service configuration from environment variables.

    All environment variables are prefixed with AUTOPR_ (e.g., AUTOPR_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - github_token: Access token of the acting identity (forks, pushes, PRs)
    - github_webhook_secret: Shared secret for webhook signatures
    - session_secret: Signing secret for session tokens
    - llm_url: URL of the OpenAI-compatible code generation endpoint
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTOPR_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: str

    github_webhook_secret: str

    # Supports GitHub Enterprise Server
    github_base_url: str = "https://api.github.com"

    # -------------------------------------------------------------------------
    # Session Configuration
    # -------------------------------------------------------------------------
    session_secret: str

    session_expire_days: int = 7

    # When enabled, POST /api/chat requires a bearer session token
    require_authentication: bool = False

    # -------------------------------------------------------------------------
    # Queue Backend Configuration
    # -------------------------------------------------------------------------
    queue_backend: Literal["memory", "postgres"] = "memory"

    database_host: str = "localhost"

    database_port: int = 5432

    database_user: str = "autopr"

    database_password: Optional[str] = None

    database_name: str = "autopr"

    # -------------------------------------------------------------------------
    # Worker Configuration
    # -------------------------------------------------------------------------
    worker_concurrency: int = 2

    worker_poll_interval_seconds: float = 1.0

    # Run the worker pool inside the API process
    run_embedded_workers: bool = True

    # -------------------------------------------------------------------------
    # Sandbox Configuration
    # -------------------------------------------------------------------------
    sandbox_base_path: str = "/var/lib/autopr/sandboxes"

    sandbox_retention_days: int = 1

    # Per-command limit inside the sandbox; None leaves commands unbounded
    command_timeout_seconds: Optional[int] = None

    # -------------------------------------------------------------------------
    # LLM Configuration
    # -------------------------------------------------------------------------
    llm_url: str

    llm_model: str = "Qwen/Qwen2.5-Coder-14B-Instruct-GPTQ-Int4"

    llm_api_key: Optional[str] = None

    max_relevant_files: int = 20

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 3000

    # Allowed CORS origin for the web frontend
    frontend_url: Optional[str] = None

    log_level: str = "INFO"

    log_format: Literal["json", "console"] = "json"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("github_webhook_secret")
    @classmethod
    def validate_webhook_secret(cls, v: str) -> str:
        """Validate that webhook secret is not empty."""
        if not v or not v.strip():
            raise ValueError("github_webhook_secret cannot be empty")
        return v

    @field_validator("session_secret")
    @classmethod
    def validate_session_secret(cls, v: str) -> str:
        """Validate that the session signing secret is not empty."""
        if not v or not v.strip():
            raise ValueError("session_secret cannot be empty")
        return v

    @field_validator("session_expire_days")
    @classmethod
    def validate_session_expire_days(cls, v: int) -> int:
        if v < 1:
            raise ValueError("session_expire_days must be at least 1")
        return v

    @field_validator("worker_concurrency")
    @classmethod
    def validate_worker_concurrency(cls, v: int) -> int:
        """Validate that at least one job can run at a time."""
        if v < 1:
            raise ValueError("worker_concurrency must be at least 1")
        return v

    @field_validator("worker_poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("worker_poll_interval_seconds must be positive")
        return v

    @field_validator("sandbox_base_path")
    @classmethod
    def validate_sandbox_path(cls, v: str) -> str:
        """Validate that sandbox base path is an absolute path."""
        if not Path(v).is_absolute():
            raise ValueError("sandbox_base_path must be an absolute path")
        return v

    @field_validator("sandbox_retention_days")
    @classmethod
    def validate_retention_days(cls, v: int) -> int:
        if v < 1:
            raise ValueError("sandbox_retention_days must be at least 1")
        return v

    @field_validator("command_timeout_seconds")
    @classmethod
    def validate_command_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("command_timeout_seconds must be at least 1")
        return v

    @field_validator("llm_url")
    @classmethod
    def validate_llm_url(cls, v: str) -> str:
        """Validate that LLM URL is a valid URL format."""
        if not v or not v.strip():
            raise ValueError("llm_url cannot be empty")
        if not v.startswith(("http://", "https://")):
            raise ValueError("llm_url must start with http:// or https://")
        return v

    @field_validator("max_relevant_files")
    @classmethod
    def validate_max_relevant_files(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_relevant_files must be at least 1")
        return v

    @field_validator("port", "database_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @property
    def database_url(self) -> str:
        """PostgreSQL connection string assembled from the database fields."""
        credentials = self.database_user
        if self.database_password:
            credentials = f"{self.database_user}:{self.database_password}"
        return (
            f"postgresql://{credentials}@{self.database_host}:"
            f"{self.database_port}/{self.database_name}"
        )


def get_settings() -> AutoPRSettings:
    """Create and return an AutoPRSettings instance.

    Returns:
        AutoPRSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return AutoPRSettings()
