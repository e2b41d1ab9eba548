from __future__ import annotations

from datetime import timedelta
from functools import cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from services.price_service import MarketDataConfig


class AppSettings(BaseSettings):
    data_dir: Path = Path("data")
    reporting_currency: str = "USD"
    store_backend: Literal["jsonl", "sql"] = "jsonl"

    store_lookback_days: int | None = None
    fetch_lookback_days: int = 7
    quote_staleness_seconds: int = 300
    idempotent_fx_writes: bool = False

    coindesk_api_key: str | None = None
    open_exchange_rates_app_id: str | None = None
    eodhd_api_key: str | None = None
    twelve_data_api_key: str | None = None
    alpha_vantage_api_key: str | None = None
    marketstack_api_key: str | None = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    def market_data_config(self) -> MarketDataConfig:
        return MarketDataConfig(
            store_lookback_days=self.store_lookback_days,
            fetch_lookback_days=self.fetch_lookback_days,
            quote_staleness=timedelta(seconds=self.quote_staleness_seconds),
            idempotent_fx_writes=self.idempotent_fx_writes,
        )


@cache
def config() -> AppSettings:
    return AppSettings()
