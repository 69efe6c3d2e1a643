"""Application settings, overridable through environment variables"""
import os
from decimal import Decimal


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # Auth (In production, these should be in env vars)
    SECRET_KEY: str = os.getenv("SECRET_KEY", "your-secret-key-keep-it-secret")
    ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

    # Payment gateway
    GATEWAY_WEBHOOK_SECRET: str = os.getenv("GATEWAY_WEBHOOK_SECRET", "gateway-webhook-secret")
    GATEWAY_SIGNATURE_HEADER: str = "X-Gateway-Signature"

    # Settlement policy
    DEFAULT_CURRENCY: str = os.getenv("DEFAULT_CURRENCY", "GHS")
    ADVANCE_MIN_PERCENT: Decimal = Decimal(os.getenv("ADVANCE_MIN_PERCENT", "30"))
    SPLIT_MIN_PERCENT: Decimal = Decimal(os.getenv("SPLIT_MIN_PERCENT", "50"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_JSON: bool = _env_bool("LOG_JSON", False)


settings = Settings()
