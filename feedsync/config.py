import logging
import os
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ENV_PREFIX = "FEEDSYNC_"


class FeedSettings(BaseSettings):
    """Settings loaded from FEEDSYNC_* environment variables and .env."""

    # Logging Settings
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    log_format: str = Field(default='%(asctime)s - %(name)s - %(levelname)s - %(message)s', description="Logging format string")
    log_to_file: bool = Field(default=False, description="Enable logging to file with rotation")
    log_file_path: str = Field(default="logs/feedsync.log", description="Path to the log file (directory will be created)")
    log_max_lines_per_file: int = Field(default=5000, gt=0, description="Maximum lines per log file before rotation")
    log_max_files: int = Field(default=10, gt=0, description="Maximum number of log files to keep")

    # Transport
    server_url: str = Field(default="http://localhost:5000", description="Socket.IO chat server URL")
    auth_token: Optional[str] = Field(default=None, description="Authentication token sent on connect")
    request_timeout: float = Field(default=10.0, gt=0, description="Timeout for acknowledged requests, seconds")

    # History
    page_size: int = Field(default=50, ge=1, description="History page size")
    max_page_size: int = Field(default=100, ge=1, description="Hard cap on the history page size")

    # Sending
    max_content_length: int = Field(default=2000, ge=1, description="Maximum message length in characters")
    max_send_attempts: int = Field(default=3, ge=0, description="Automatic retries before a send is terminally failed")
    retry_base_delay: float = Field(default=1.0, gt=0, description="Backoff base delay, seconds")
    retry_max_delay: float = Field(default=30.0, gt=0, description="Backoff delay cap, seconds")
    echo_timeout: float = Field(default=5.0, gt=0, description="Wait for the live echo of an own message before refreshing, seconds")

    # Presence
    typing_timeout: float = Field(default=3.0, gt=0, description="Typing indicator expiry, seconds")

    # Live subscription
    max_reconnect_attempts: int = Field(default=5, ge=0, description="Subscription reconnect attempts")
    reconnect_base_delay: float = Field(default=1.0, gt=0, description="Subscription reconnect backoff base, seconds")
    liveness_interval: float = Field(default=30.0, ge=0, description="Seconds between liveness probes (0 disables)")

    # Observability
    tracing_enabled: bool = Field(default=False, description="Export OpenTelemetry traces over OTLP/HTTP")

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        env_prefix=ENV_PREFIX,
        extra='ignore',
        case_sensitive=False
    )

    @model_validator(mode="after")
    def _check_delays(self) -> 'FeedSettings':
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        return self


def load_settings(**overrides) -> FeedSettings:
    """
    Load settings from .env and the environment.

    Raises:
        ValueError: If the configuration does not validate
    """
    logger.info(f"Loading configuration from .env file and environment variables (prefix: '{ENV_PREFIX}')...")
    try:
        from dotenv import load_dotenv
        env_loaded = load_dotenv('.env', override=False)
        logger.debug(f".env loading result: {env_loaded}")
    except Exception as e:
        logger.warning(f"Failed to load .env file: {e}")

    found = [k for k in os.environ if k.upper().startswith(ENV_PREFIX)]
    logger.debug(f"Found {len(found)} {ENV_PREFIX} environment variables: {found}")

    try:
        settings = FeedSettings(**overrides)
    except Exception as e:
        logger.exception(f"Critical error loading configuration: {e}")
        raise ValueError(f"Failed to load configuration: {e}") from e
    logger.info("Configuration loaded successfully.")
    return settings
