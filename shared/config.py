"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "eventpay-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "eventpay"
    # Full SQLAlchemy URL, wins over the postgres_* parts (e.g. sqlite+aiosqlite://)
    sqlalchemy_url: Optional[str] = None

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    broker_enabled: bool = True

    # Payment gateway (platform defaults, events may carry their own)
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 10.0

    # Payments
    default_currency: str = "INR"
    default_tax_percentage: float = 18.0
    duplicate_window_minutes: int = 5
    stale_pending_minutes: int = 30
    inventory_atomic: bool = True
    processed_payments_cap: int = 100

    # Admin
    admin_api_token: str = ""

    # Downstream actions (email, badges, certificates, WhatsApp)
    app_base_url: str = "http://localhost:3000"
    whatsapp_api_url: str = ""
    whatsapp_api_key: str = ""

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.sqlalchemy_url:
            return self.sqlalchemy_url
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
