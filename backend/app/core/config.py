from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Payment Recovery Engine"
    version: str = "0.1.0"
    DEBUG: bool = False
    APP_DATABASE_DSN: str = "sqlite:////tmp/recovery.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Caller identity (bearer JWT issued by the auth service)
    AUTH_JWT_SECRET: str = "change-me"
    AUTH_JWT_ALGORITHM: str = "HS256"

    # Payment processor
    PAYMENT_PROCESSOR: str = "http"  # "http" or "stripe"
    PAYMENT_PROCESSOR_URL: str = ""
    PAYMENT_PROCESSOR_API_KEY: str = ""
    PROCESSOR_TIMEOUT_SECONDS: float = 30.0
    PROCESSOR_TRANSPORT_RETRIES: int = 2
    PROCESSOR_WEBHOOK_SECRET: str = "whsec_processor_default"
    stripe_api_key: str = ""

    # Notifier
    NOTIFIER_URL: str = ""  # empty: log messages instead of delivering them
    NOTIFIER_API_KEY: str = ""
    NOTIFIER_TIMEOUT_SECONDS: float = 10.0
    NOTIFIER_TRANSPORT_RETRIES: int = 2
    NOTIFIER_WEBHOOK_SECRET: str = "whsec_notifier_default"

    # Retry schedule
    RETRY_BASE_DELAY_MINUTES: int = 60
    RETRY_MAX_DELAY_MINUTES: int = 72 * 60
    RETRY_JITTER_MAX_MINUTES: int = 30
    DEFAULT_MAX_RETRY_ATTEMPTS: int = 3
    ESCALATION_ABANDON_AFTER_HOURS: int = 7 * 24

    # Payment method health
    PAYMENT_METHOD_BLOCK_SCORE: float = 0.2
    PAYMENT_METHOD_BLOCK_MIN_FAILURES: int = 3
    PAYMENT_METHOD_BLOCK_DAYS: int = 7

    # Job execution log
    JOB_HISTORY_RETENTION_DAYS: int = 30

    # Account state
    GRACE_THRESHOLD_HOURS: int = 0
    GRACE_PERIOD_DAYS_NEW: int = 3
    GRACE_PERIOD_DAYS_EXISTING: int = 5
    GRACE_PERIOD_DAYS_HIGH_VALUE: int = 7
    GRACE_PERIOD_DAYS_AT_RISK: int = 1
    SUSPENSION_POLICY: str = "campaign_exhausted"  # campaign_exhausted, failure_count, time_based
    SUSPENSION_FAILURE_THRESHOLD: int = 3
    SUSPENSION_AFTER_DAYS: int = 14

    # Dunning
    DUNNING_MIN_AMOUNT_CENTS: int = 0
    HIGH_VALUE_MONTHLY_CENTS: int = 10000
    SWEEP_BATCH_SIZE: int = 50

    # Personalization defaults
    COMPANY_NAME: str = "Your Company"
    SUPPORT_EMAIL: str = "support@example.com"
    SUPPORT_PHONE: str = "1-800-555-0123"
    APP_URL: str = "https://app.example.com"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"


settings = Settings()
