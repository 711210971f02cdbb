"""Shutdown agent - Configuration."""

import socket
from typing import List, Optional

from pydantic import ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent.core.errors import ConfigError


class Settings(BaseSettings):
    """Agent settings loaded from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Registry
    supabase_url: str
    supabase_key: str

    # Operator credentials
    user_email: str
    user_password: str

    # Device identity (defaults to the hostname)
    device_name: Optional[str] = None

    # Timing, in seconds
    status_interval: float = 180.0
    poll_interval: float = 10.0
    min_uptime: float = 60.0
    shutdown_grace: float = 5.0
    request_timeout: float = 10.0
    restart_delay: float = 30.0

    # Startup device registration
    startup_retries: int = 3
    startup_retry_delay: float = 5.0

    # Recording a failed shutdown
    outcome_retries: int = 5
    outcome_retry_delay: float = 5.0

    # Overrides the built-in power-off command for this OS
    power_off_command: Optional[List[str]] = None

    debug: bool = False

    @field_validator("supabase_url", "supabase_key", "user_email", "user_password")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("supabase_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("startup_retries", "outcome_retries")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    def resolved_device_name(self) -> str:
        """Stable device key: the configured name or this machine's hostname."""
        if self.device_name and self.device_name.strip():
            return self.device_name.strip()
        return socket.gethostname()


def load_settings(env_file: Optional[str] = None, **overrides) -> Settings:
    """Load settings once at startup.

    Raises ConfigError naming every missing or invalid field.
    """
    kwargs = dict(overrides)
    if env_file is not None:
        kwargs["_env_file"] = env_file
    try:
        return Settings(**kwargs)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ConfigError(f"Invalid or missing settings: {', '.join(fields)}") from e
