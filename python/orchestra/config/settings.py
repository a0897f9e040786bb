"""
Configuration management using Pydantic Settings.

Every field can be set from the environment with the ``ORCHESTRA_`` prefix
(``ORCHESTRA_STORE_BACKEND=sqlite``) or from a ``.env`` file.
"""
import logging
import os
from functools import lru_cache
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from orchestra.models import AgentRole

_DEFAULT_HOME = os.path.expanduser("~/.orchestra")


class Settings(BaseSettings):
    """Application settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="Orchestra", description="Application name")
    environment: str = Field(default="development", description="Environment: development, staging, production")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    # Scheduler defaults, clamped when applied
    max_parallel_executions: int = Field(default=2, description="Concurrent executions per orchestration")
    retry_attempts: int = Field(default=3, description="Retries per task before permanent failure")
    execution_timeout: float = Field(default=300.0, description="Seconds to wait for one completion")
    poll_interval: float = Field(default=3.0, gt=0, description="Completion poll interval in seconds")

    # Storage
    store_backend: str = Field(default="memory", description="Store backend: memory or sqlite")
    db_path: str = Field(default=os.path.join(_DEFAULT_HOME, "orchestra.db"), description="SQLite database path")

    # Planner
    planner_url: Optional[str] = Field(default=None, description="Planning service URL")
    planner_timeout: float = Field(default=120.0, gt=0, description="Planning request timeout in seconds")
    planner_api_key: Optional[str] = Field(default=None, description="Planning service bearer token")

    # Agent services, one URL per role: ORCHESTRA_AGENT_URLS='{"MAESTRO": "http://..."}'
    agent_urls: Dict[str, str] = Field(default_factory=dict, description="Capability endpoint per agent role")
    agent_timeout: float = Field(default=300.0, gt=0, description="Capability request timeout in seconds")
    agent_api_key: Optional[str] = Field(default=None, description="Capability service bearer token")

    # Audit
    audit_log_path: Optional[str] = Field(
        default=os.path.join(_DEFAULT_HOME, "audit_events.jsonl"),
        description="JSONL audit trail path; empty disables the file",
    )
    audit_buffer_size: int = Field(default=1000, ge=1, description="In-memory audit entries kept")

    # API
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8000, ge=1024, le=65535, description="API port")
    cors_origins: List[str] = Field(
        default=["http://localhost:8000", "http://127.0.0.1:8000"],
        description="Allowed CORS origins",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        allowed = ["memory", "sqlite"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"Store backend must be one of {allowed}")
        return v_lower

    @field_validator("agent_urls")
    @classmethod
    def validate_agent_urls(cls, v: Dict[str, str]) -> Dict[str, str]:
        roles = {r.value for r in AgentRole}
        normalized = {k.upper(): url for k, url in v.items()}
        unknown = sorted(set(normalized) - roles)
        if unknown:
            raise ValueError(f"Unknown agent roles {unknown}, expected some of {sorted(roles)}")
        return normalized

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)

    def scheduler_overrides(self) -> dict:
        return {
            "max_parallel_executions": self.max_parallel_executions,
            "retry_attempts": self.retry_attempts,
            "execution_timeout": self.execution_timeout,
            "poll_interval": self.poll_interval,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
