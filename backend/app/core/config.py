from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Subledger"
    version: str = "0.1.0"
    APP_DOMAIN: str = "example.com"
    APP_DATABASE_DSN: str = "sqlite:////tmp/database.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Payment gateway
    PAYMENT_GATEWAY: str = "stripe"  # "stripe" or "null"
    stripe_api_key: str = ""
    GATEWAY_TIMEOUT_SECONDS: float = 10.0

    # Gateway event ledger
    WEBHOOK_MAX_RETRIES: int = 3

    # Billing automation
    RENEWAL_LOOKAHEAD_DAYS: int = 7
    BILLING_MAX_CONCURRENCY: int = 5
    BILLING_JOB_TIMEOUT_SECONDS: int = 300
    PAYMENT_RETRY_LIMIT: int = 3

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    @property
    def gateway_enabled(self) -> bool:
        return self.PAYMENT_GATEWAY != "null" and bool(self.stripe_api_key)


settings = Settings()
