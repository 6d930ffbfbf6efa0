from typing import List, Optional
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.domain.errors import ConfigurationError


class Settings(BaseSettings):
    """Runtime configuration for the subscription change sync worker.

    Every field maps to the upper-cased environment variable of the same name;
    list values (``WEBHOOK_ENDPOINTS``, ``SYNC_TABLES``) are JSON arrays.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_dsn: str = Field(..., description="Postgres DSN holding external_changes")
    redis_url: str = Field("redis://localhost:6379/0")
    pipeline_name: str = Field("subscription-change-sync")
    log_level: str = Field("INFO")
    metrics_port: Optional[int] = Field(None)

    sync_enabled: bool = Field(True)
    poll_interval_seconds: float = Field(30.0, gt=0)
    batch_size: int = Field(100, ge=1)
    max_retries: int = Field(3, ge=1)
    retry_delay_seconds: float = Field(1.0, ge=0)
    max_processing_time_seconds: float = Field(600.0, gt=0)
    duplicate_window_seconds: float = Field(5.0, ge=0)
    manual_trigger_wait_seconds: float = Field(30.0, ge=0)
    sync_tables: List[str] = Field(default_factory=list)

    health_check_interval_seconds: float = Field(300.0, gt=0)
    health_lag_threshold_seconds: float = Field(300.0, gt=0)
    health_backlog_threshold: int = Field(1000, ge=1)

    cleanup_interval_seconds: float = Field(86400.0, gt=0)
    cleanup_retention_days: int = Field(30, ge=1)
    cleanup_batch_size: int = Field(1000, ge=1)

    webhook_enabled: bool = Field(True)
    webhook_endpoints: List[str] = Field(default_factory=list)
    webhook_secret: str = Field("")
    webhook_timeout_seconds: float = Field(5.0, gt=0)
    webhook_max_retries: int = Field(3, ge=1)
    webhook_retry_delay_seconds: float = Field(1.0, ge=0)
    webhook_max_retry_delay_seconds: float = Field(30.0, ge=0)
    webhook_workers: int = Field(5, ge=1)

    bridge_enabled: bool = Field(True)
    bridge_host: str = Field("localhost")
    bridge_port: int = Field(8080, ge=1, le=65535)
    bridge_username: str = Field("")
    bridge_password: str = Field("")
    bridge_ssl_enabled: bool = Field(False)
    bridge_validate_certificates: bool = Field(True)
    bridge_api_version: str = Field("v1")
    bridge_timeout_seconds: float = Field(5.0, gt=0)
    bridge_max_retries: int = Field(3, ge=1)
    bridge_retry_delay_seconds: float = Field(1.0, ge=0)
    bridge_payload_fallback: bool = Field(False)
    bridge_health_window: int = Field(20, ge=1)
    bridge_degraded_error_rate: float = Field(0.5, gt=0, le=1)
    bridge_disconnect_after_failures: int = Field(3, ge=1)
    bridge_reconnect_interval_seconds: float = Field(30.0, ge=0)

    @property
    def bridge_base_url(self) -> str:
        scheme = "https" if self.bridge_ssl_enabled else "http"
        return f"{scheme}://{self.bridge_host}:{self.bridge_port}"


def require_runtime_settings(settings: Settings) -> None:
    """Fail fast on configuration the worker cannot run with."""
    if settings.webhook_enabled and settings.webhook_endpoints:
        if not settings.webhook_secret:
            raise ConfigurationError("WEBHOOK_SECRET is required when webhook endpoints are configured")
        for endpoint in settings.webhook_endpoints:
            parsed = urlparse(endpoint)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ConfigurationError(f"Invalid webhook endpoint: {endpoint!r}")

    if settings.bridge_enabled:
        missing = [
            name
            for name in ("bridge_host", "bridge_username", "bridge_password")
            if not getattr(settings, name)
        ]
        if missing:
            raise ConfigurationError(f"Bridge is enabled but {', '.join(m.upper() for m in missing)} not set")
