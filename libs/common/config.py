from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "test", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    BACKEND_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Auth
    AUTH_JWT_SECRET: str = "test-jwt-secret"
    AUTH_JWT_ALGORITHM: str = "HS256"

    # At-rest encryption for provider secrets (Plaid tokens, node credentials)
    ENCRYPTION_KEY: Optional[str] = None

    # Job queue
    REDIS_URL: str = "redis://localhost:6379/0"
    QUEUE_ENABLED: bool = True
    QUEUE_CONNECT_TIMEOUT: int = 2
    JOB_RETRY_BASE_DELAY: float = 2.0
    FUNDING_JOB_DELAY_SECONDS: int = 5
    FUNDING_CLAIM_STALE_SECONDS: int = 900

    # Provider HTTP behaviour
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_RETRIES: int = 3
    PROVIDER_RETRY_BASE_DELAY: float = 1.0
    CONVERSION_FEE_TOLERANCE: float = 0.02

    # Plaid
    PLAID_CLIENT_ID: str = ""
    PLAID_SECRET: str = ""
    PLAID_ENV: Literal["sandbox", "development", "production"] = "sandbox"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_BASE_URL: str = "https://api.stripe.com"

    # Strike
    STRIKE_API_KEY: str = ""
    STRIKE_BASE_URL: str = "https://api.strike.me"
    STRIKE_WEBHOOK_SECRET: str = ""

    # Breez
    BREEZ_API_KEY: str = ""
    BREEZ_BASE_URL: str = "https://api.breez.technology"
    BREEZ_NETWORK: Literal["mainnet", "testnet"] = "testnet"
    BREEZ_WEBHOOK_SECRET: str = ""

    # Invoicing backends
    INVOICE_PROVIDER: Literal["btcpay", "lnbits"] = "btcpay"
    BTCPAY_URL: str = "http://localhost:23001"
    BTCPAY_API_KEY: str = ""
    BTCPAY_STORE_ID: str = ""
    LNBITS_URL: str = "https://legend.lnbits.com"
    LNBITS_API_KEY: str = ""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @property
    def PLAID_BASE_URL(self) -> str:
        return f"https://{self.PLAID_ENV}.plaid.com"


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
