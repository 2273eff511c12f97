from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # =========================
    # APP
    # =========================
    PROJECT_NAME: str = "MediBook Hospital API"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # =========================
    # DATABASE
    # =========================
    DATABASE_URL: str = "sqlite:///./medibook.db"
    DB_ECHO: bool = False

    # =========================
    # JWT
    # =========================
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # =========================
    # PAYMENT GATEWAY
    # =========================
    GATEWAY_MODE: str = "fake"  # fake | http
    GATEWAY_BASE_URL: str = "https://sandbox.gateway.local"
    GATEWAY_MERCHANT_ID: str = ""
    GATEWAY_API_KEY: str = ""
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_WEBHOOK_SECRET: str = "change-me-webhook"

    # refunds: wallet share is rounded half-up to this unit
    REFUND_ROUNDING_UNIT: Decimal = Decimal("1")

    # =========================
    # SCHEDULING
    # =========================
    SLOT_STEP_MINUTES: int = 15
    DAY_START_HOUR: int = 8
    DAY_END_HOUR: int = 20

    # payments stuck mid-saga longer than this are picked up by the sweep
    RECONCILE_AFTER_MINUTES: int = 15


@lru_cache
def get_settings() -> Settings:
    return Settings()
