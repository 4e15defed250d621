"""Configuration management for the VAP generation controller."""

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Controller settings, read from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "vapgen-controller"
    app_version: str = "0.1.0"

    # Workers and retries
    workers: int = Field(2, ge=1)
    max_retries: int = Field(10, ge=0)
    queue_base_delay: float = Field(0.005, gt=0)  # seconds
    queue_max_delay: float = Field(1000.0, gt=0)  # seconds
    queue_qps: float = Field(10.0, gt=0)
    queue_burst: int = Field(100, ge=1)

    # Stale cache pruning, 0 disables
    prune_interval: int = Field(300, ge=0)  # seconds

    # Events
    namespace: str = "default"
    event_recording_enabled: bool = True
    event_buffer_size: int = Field(1000, ge=1)

    # Metrics, 0 disables the endpoint
    metrics_port: int = Field(9090, ge=0)

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_json: bool = False

    # Kopf watch settings
    liveness_endpoint: str = "http://0.0.0.0:8080/healthz"
    watch_server_timeout: int = 300
    watch_client_timeout: int = 310
    watch_connect_timeout: int = 10

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept lower-case level names."""
        if isinstance(v, str):
            return v.upper()
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
