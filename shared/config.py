"""Shared configuration."""
from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "payment-service"
    service_port: int = 8000
    environment: str = "development"
    backend_url: str = "http://localhost:8000"

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "payments"
    database_dsn: Optional[str] = None

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Logging
    log_level: str = "INFO"

    # Payd provider
    payd_base_url: str = "https://api.mypayd.app/api/v3"
    payd_payout_base_url: str = "https://api.payd.money/api/v2"
    payd_username: str = ""
    payd_password: str = ""
    payd_payment_callback_url: Optional[str] = None
    payd_payout_callback_url: Optional[str] = None
    provider_timeout_seconds: float = 30.0
    provider_max_attempts: int = 3
    provider_backoff_seconds: float = 1.0
    provider_backoff_max_seconds: float = 10.0

    # Webhook security
    webhook_secret: Optional[str] = None
    webhook_allowed_ips: str = ""
    webhook_rate_limit: int = 100

    # Money
    currency: str = "KES"
    platform_commission_rate: Decimal = Decimal("0.09")
    min_withdrawal_amount: Decimal = Decimal("100")
    max_withdrawal_amount: Decimal = Decimal("150000")

    # Intents
    idempotency_window_seconds: int = 120

    # Reconciliation
    payment_sweep_interval_seconds: int = 300
    pending_threshold_minutes: int = 10
    max_pending_minutes: int = 60
    lookback_hours: int = 24
    sweep_batch_size: int = 50
    payout_sweep_interval_seconds: int = 3600
    payout_stuck_hours: int = 2
    payout_lookback_hours: int = 48

    # Status stream
    sse_heartbeat_seconds: float = 30.0
    sse_max_duration_seconds: float = 300.0

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

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def allowed_ips(self) -> List[str]:
        """Webhook source allowlist parsed from the comma separated setting."""
        return [ip.strip() for ip in self.webhook_allowed_ips.split(",") if ip.strip()]

    @property
    def payment_callback_url(self) -> str:
        return self.payd_payment_callback_url or f"{self.backend_url}/webhooks/payd/payments"

    @property
    def payout_callback_url(self) -> str:
        return self.payd_payout_callback_url or f"{self.backend_url}/webhooks/payd/payouts"

    class Config:
        env_file = ".env"
        case_sensitive = False
