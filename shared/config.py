"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the stock reservation service."""

    # Service info
    service_name: str = "stock-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "stock"
    database_dsn: Optional[str] = None  # full URL, overrides the postgres_* parts
    database_echo: bool = False

    # Row locks: how long a reserve/cancel/fulfill waits before giving up
    lock_timeout_ms: int = 2000

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    broker_enabled: bool = True
    outbox_poll_interval_seconds: int = 1
    contention_retry_attempts: int = 5

    # Reservations
    reservation_default_ttl_seconds: Optional[int] = None
    require_actor: bool = False
    expiration_sweep_enabled: bool = True
    expiration_sweep_interval_seconds: int = 60
    expiration_batch_size: int = 100

    # Rate limiting
    rate_limit_enabled: bool = True
    rate_limit: str = "100/minute"

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    class Config:
        env_file = ".env"
        case_sensitive = False
