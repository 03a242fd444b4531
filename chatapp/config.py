"""
Runtime configuration for the chat server and client.

Values come from environment variables prefixed with ``CHATAPP_`` (or a
``.env`` file in the working directory). All durations are in seconds.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings shared by the server and client halves."""

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CHATAPP_", extra="ignore")

    # Server
    host: str = "127.0.0.1"
    port: int = 50051
    data_dir: str = "chatapp/data"

    # Logging
    log_dir: Optional[str] = None
    log_level: str = "INFO"

    # Connection manager
    ack_timeout: float = 5.0
    connect_timeout: float = 10.0
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 5.0
    reconnect_max_attempts: int = 5

    # Group membership
    join_stagger: float = 0.2

    # Typing indicators
    typing_quiet_interval: float = 1.0
    typing_ttl: float = 3.0

    # Read receipts
    read_dwell: float = 1.0

    # History / limits
    history_page_size: int = 50
    max_message_length: int = 2000
    rate_limit_max: int = 10
    rate_limit_window: float = 10.0
    notification_cap: int = 100

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
