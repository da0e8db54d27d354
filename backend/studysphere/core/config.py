# backend/studysphere/core/config.py
"""
Runtime settings for the StudySphere messaging core.

Values come from the environment and an optional ``backend/.env`` file.
"""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug("[CONFIG] Looking for .env at: %s (exists=%s)", env_path, env_path.exists())
    load_dotenv(env_path)


def is_running_tests() -> bool:
    """Detect if code is running under pytest."""
    return os.getenv("PYTEST_CURRENT_TEST") is not None


class Settings(BaseSettings):
    environment: str = Field(
        default="development",
        description="Deployment environment (development|staging|production)",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./studysphere.db",
        description="SQLAlchemy URL for the conversation store",
    )
    database_echo: bool = False
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Cross-worker fan-out. When unset, delivery stays in-process.
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL used by the broadcaster relay (optional)",
    )
    broadcast_channel: str = Field(
        default="studysphere:conversation-events",
        description="Pub/sub channel carrying realtime conversation events",
    )

    # Message content
    message_encryption_key: SecretStr = Field(
        default=SecretStr(""),
        description="Fernet key for encrypting message content at rest (optional in dev)",
    )
    message_preview_length: int = Field(
        default=100, description="Characters kept in a conversation's last-message preview"
    )
    max_message_length: int = Field(default=2000, description="Maximum message length")

    # Realtime sessions
    sse_heartbeat_interval: int = Field(
        default=30, description="Seconds between SSE heartbeat events"
    )
    session_queue_size: int = Field(
        default=100, description="Per-session buffered events before new events are dropped"
    )

    # Pagination
    conversation_page_size: int = Field(default=20, description="Default conversation page size")
    max_conversation_page_size: int = 100
    message_page_size: int = Field(default=50, description="Default message page size")
    max_message_page_size: int = 200

    # Observability
    slow_operation_threshold: float = Field(
        default=1.0, description="Seconds after which a service operation is logged as slow"
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("message_encryption_key")
    @classmethod
    def require_message_key_in_prod(cls, value: SecretStr, info: ValidationInfo) -> SecretStr:
        """Ensure message encryption is configured when running in production."""

        environment = info.data.get("environment", "development")
        if environment == "production" and not value.get_secret_value():
            raise ValueError("MESSAGE_ENCRYPTION_KEY must be set in production environments.")
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url_is_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


settings = Settings()
