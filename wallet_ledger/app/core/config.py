from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Wallet Ledger API"
    database_url: str = "sqlite:///wallet_ledger.db"
    database_echo: bool = False
    sqlite_busy_timeout_seconds: float = 5.0
    log_level: str = "INFO"

    exchange_api_key: Optional[str] = None
    exchange_api_url: str = "https://v6.exchangerate-api.com/v6"
    coinmarketcap_api_key: Optional[str] = None
    coinmarketcap_api_url: str = (
        "https://pro-api.coinmarketcap.com/v1/cryptocurrency/listings/latest"
    )
    http_timeout_seconds: float = 10.0
    rates_ttl_seconds: int = 24 * 60 * 60
    crypto_rates_ttl_seconds: int = 3 * 60 * 60
    rates_failure_cooldown_seconds: int = 5 * 60
    rates_max_cached_days: int = 1024

    default_main_currency: str = "USD"
    anomaly_threshold: Decimal = Decimal("500")
    ledger_retry_attempts: int = 3

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="WALLET_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
