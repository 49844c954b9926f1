from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration read from environment variables."""

    # General
    app_env: str = "local"
    log_level: str = "INFO"

    # Test mode: deterministic outcomes instead of simulated processing
    test_mode: bool = False
    test_payment_success: bool = True
    test_processing_delay_ms: int = 1000

    # Payment defaults when the request omits them
    default_payment_amount: int = 50000
    default_currency: str = "INR"

    # Idempotency
    idempotency_ttl_hours: int = 24

    # Webhook delivery
    webhook_retry_intervals_test: bool = False
    webhook_timeout_seconds: float = 5.0
    webhook_max_attempts: int = 5
    webhook_response_body_limit: int = 2000

    # Job queue policy
    job_max_attempts: int = 3
    job_retry_delay_seconds: float = 5.0
    job_claim_ttl_seconds: int = 300
    queue_poll_interval_seconds: float = 1.0

    # Worker concurrency per lane
    payment_worker_concurrency: int = 2
    refund_worker_concurrency: int = 1
    webhook_worker_concurrency: int = 4

    # Simulated refund settlement delay (seconds)
    refund_delay_min_seconds: float = 3.0
    refund_delay_max_seconds: float = 5.0

    # Seeded sandbox merchant
    seed_test_merchant: bool = True
    test_merchant_id: str = "merchant_test_123"
    test_merchant_api_key: str = "key_test_abc123"
    test_merchant_api_secret: str = "secret_test_xyz789"
    test_merchant_webhook_url: str = ""
    test_merchant_webhook_secret: str = "whsec_test_abc123"

    # Database (PostgreSQL)
    db_host: str = ""
    db_port: int = 5432
    db_user: str = ""
    db_password: str = ""
    db_name: str = ""
    db_schema: str = "paygate"

    @property
    def db_enabled(self) -> bool:
        return bool(self.db_host and self.db_user and self.db_name)

    @property
    def db_dsn(self) -> str:
        if not self.db_enabled:
            return ""
        return f"postgresql://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
