"""Application settings using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="learnhub", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: Literal["development", "staging", "production", "testing"] = Field(
        default="development", description="Environment name"
    )
    debug: bool = Field(default=True, description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Authentication (tokens are issued by the identity service)
    auth_secret_key: str = Field(
        default="dev-jwt-secret-key-change-in-production-32chars!",
        description="JWT signing key (min 32 chars)",
    )
    auth_algorithm: str = Field(default="HS256", description="JWT algorithm")
    auth_access_token_expire_minutes: int = Field(
        default=15, description="Lifetime of locally minted access tokens"
    )

    # Persistence
    persistence_backend: Literal["cassandra", "memory"] = Field(
        default="cassandra",
        description="Enrollment/course storage backend (memory is for local dev)",
    )

    # Redis
    redis_enabled: bool = Field(
        default=False, description="Fan out domain events over Redis pub/sub"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    redis_max_connections: int = Field(default=10, description="Max Redis connections")
    redis_socket_timeout: float = Field(default=5.0, description="Redis socket timeout")
    redis_socket_connect_timeout: float = Field(
        default=5.0, description="Redis connect timeout"
    )
    redis_retry_on_timeout: bool = Field(default=True, description="Retry on timeout")
    redis_health_check_interval: int = Field(
        default=30, description="Health check interval"
    )
    redis_events_channel_prefix: str = Field(
        default="events:enrollment", description="Pub/sub channel prefix for events"
    )

    # Cassandra
    cassandra_hosts: list[str] = Field(
        default=["localhost"], description="Cassandra hosts"
    )
    cassandra_port: int = Field(default=9042, description="Cassandra port")
    cassandra_keyspace: str = Field(
        default="learnhub", description="Cassandra keyspace"
    )
    cassandra_username: str | None = Field(default=None, description="Cassandra user")
    cassandra_password: str | None = Field(
        default=None, description="Cassandra password"
    )
    cassandra_protocol_version: int = Field(default=4, description="Protocol version")
    cassandra_connect_timeout: float = Field(
        default=10.0, description="Connect timeout"
    )

    # Progress tracking
    progress_passing_score: int = Field(
        default=70, ge=0, le=100, description="Minimum score for a passed lesson"
    )
    progress_recent_limit: int = Field(
        default=5, ge=1, description="Completed lessons shown in progress summaries"
    )
    progress_max_save_retries: int = Field(
        default=3,
        ge=0,
        description="Reload/re-apply attempts after a concurrent write conflict",
    )
    enrollment_default_duration_days: int | None = Field(
        default=None, description="Access window for new enrollments (None = forever)"
    )

    # Certificate issuer
    certificate_issuer_url: str | None = Field(
        default=None, description="Base URL of the certification service"
    )
    certificate_issuer_api_key: str | None = Field(
        default=None, description="API key sent to the certification service"
    )
    certificate_issuer_timeout: float = Field(
        default=30.0, description="Certificate request timeout in seconds"
    )
    certificate_issuance_async: bool = Field(
        default=False,
        description="Issue certificates from a background worker instead of inline",
    )
    certificate_max_retries: int = Field(
        default=5, ge=0, description="Retries for background certificate issuance"
    )
    certificate_retry_base_delay: float = Field(
        default=1.0, description="Base backoff delay in seconds (doubles per attempt)"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="DEBUG", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", description="Log format"
    )
    log_include_caller_info: bool = Field(
        default=True, description="Include caller info"
    )
    log_dir: str = Field(default="logs", description="Directory for log files")
    log_file_max_bytes: int = Field(
        default=10 * 1024 * 1024, description="Max size per log file (10MB default)"
    )
    log_file_backup_count: int = Field(
        default=5, description="Number of backup log files to keep"
    )
    log_requests: bool = Field(
        default=True, description="Log HTTP request start/finish"
    )
    log_exclude_paths: list[str] = Field(
        default=["/health", "/health/live", "/health/ready"],
        description="Paths to exclude from request logging",
    )

    # CORS
    cors_origins: list[str] = Field(default=["*"], description="CORS origins")
    cors_allow_credentials: bool = Field(default=True, description="Allow credentials")
    cors_allow_methods: list[str] = Field(default=["*"], description="Allowed methods")
    cors_allow_headers: list[str] = Field(default=["*"], description="Allowed headers")
    cors_max_age: int = Field(default=600, description="CORS max age")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == "production"

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == "testing"

    @property
    def certificate_issuer_configured(self) -> bool:
        """Check if the certification service is configured."""
        return bool(self.certificate_issuer_url)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
