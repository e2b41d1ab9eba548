from __future__ import annotations

import logging
import tomllib
from enum import StrEnum
from pathlib import Path
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from config import AppSettings, config
from domain.clock import Clock

from .alpha_vantage_source import AlphaVantageSource, _AlphaVantageClient
from .coindesk_source import CoinDeskSource, _CoinDeskClient
from .coingecko_source import CoinGeckoSource
from .eodhd_source import EodhdSource, _EodhdClient
from .frankfurter_source import FrankfurterSource
from .marketstack_source import MarketstackSource, _MarketstackClient
from .open_exchange_rates_source import OpenExchangeRatesSource, _OpenExchangeRatesClient
from .price_sources import (
    CryptoPriceRouter,
    CryptoPriceSource,
    EquityPriceRouter,
    EquityPriceSource,
    FxRateRouter,
    FxRateSource,
)
from .twelve_data_source import TwelveDataSource, _TwelveDataClient

logger = logging.getLogger(__name__)

SOURCE_FILE = "source.toml"


class PriceSourceType(StrEnum):
    EODHD = "eodhd"
    TWELVE_DATA = "twelve_data"
    ALPHA_VANTAGE = "alpha_vantage"
    MARKETSTACK = "marketstack"
    COINGECKO = "coingecko"
    COINDESK = "coindesk"
    FRANKFURTER = "frankfurter"
    OPEN_EXCHANGE_RATES = "open_exchange_rates"


class AssetCategory(StrEnum):
    EQUITY = "equity"
    CRYPTO = "crypto"
    FX = "fx"


SOURCE_CATEGORIES: dict[PriceSourceType, AssetCategory] = {
    PriceSourceType.EODHD: AssetCategory.EQUITY,
    PriceSourceType.TWELVE_DATA: AssetCategory.EQUITY,
    PriceSourceType.ALPHA_VANTAGE: AssetCategory.EQUITY,
    PriceSourceType.MARKETSTACK: AssetCategory.EQUITY,
    PriceSourceType.COINGECKO: AssetCategory.CRYPTO,
    PriceSourceType.COINDESK: AssetCategory.CRYPTO,
    PriceSourceType.FRANKFURTER: AssetCategory.FX,
    PriceSourceType.OPEN_EXCHANGE_RATES: AssetCategory.FX,
}

# source type -> (option in the [config] table, fallback AppSettings field)
REQUIRED_CREDENTIALS: dict[PriceSourceType, tuple[str, str]] = {
    PriceSourceType.EODHD: ("api_key", "eodhd_api_key"),
    PriceSourceType.TWELVE_DATA: ("api_key", "twelve_data_api_key"),
    PriceSourceType.ALPHA_VANTAGE: ("api_key", "alpha_vantage_api_key"),
    PriceSourceType.MARKETSTACK: ("api_key", "marketstack_api_key"),
    PriceSourceType.OPEN_EXCHANGE_RATES: ("app_id", "open_exchange_rates_app_id"),
}


class PriceSourceConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    source_type: PriceSourceType = Field(alias="type")
    enabled: bool = True
    # Lower values are consulted first.
    priority: int = Field(default=100, ge=0)
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def category(self) -> AssetCategory:
        return SOURCE_CATEGORIES[self.source_type]


class LoadedPriceSource(NamedTuple):
    name: str
    config: PriceSourceConfig


def load_source_config(path: Path) -> PriceSourceConfig:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    return PriceSourceConfig.model_validate(raw)


class PriceSourceRegistry:
    """Price sources configured under ``<data_dir>/price_sources/<name>/source.toml``.

    Sources that need credentials take them from their ``[config]`` table,
    falling back to the matching settings field; a source with neither is
    skipped with a warning when the routers are built.
    """

    def __init__(self, data_dir: Path, *, settings: AppSettings | None = None) -> None:
        self.sources_dir = data_dir / "price_sources"
        self.settings = settings
        self.loaded: list[LoadedPriceSource] = []

    def load(self) -> list[LoadedPriceSource]:
        self.loaded = []
        if not self.sources_dir.is_dir():
            return self.loaded

        for source_dir in sorted(self.sources_dir.iterdir()):
            source_file = source_dir / SOURCE_FILE
            if not source_dir.is_dir() or not source_file.exists():
                continue
            try:
                source_config = load_source_config(source_file)
            except (OSError, tomllib.TOMLDecodeError, ValidationError) as exc:
                logger.warning("Skipping price source %s: %s", source_file, exc)
                continue
            if not source_config.enabled:
                logger.debug("Price source %s is disabled", source_dir.name)
                continue
            self.loaded.append(LoadedPriceSource(source_dir.name, source_config))

        # sort is stable, so equal priorities keep directory-name order
        self.loaded.sort(key=lambda loaded: loaded.config.priority)
        return self.loaded

    def by_category(self, category: AssetCategory) -> list[LoadedPriceSource]:
        return [loaded for loaded in self.loaded if loaded.config.category == category]

    def credential(self, loaded: LoadedPriceSource) -> str | None:
        """Credential for a source that needs one, or None when it is not configured anywhere."""
        option, setting = REQUIRED_CREDENTIALS[loaded.config.source_type]
        value = loaded.config.config.get(option) or getattr(self.settings or config(), setting)
        return str(value) if value else None

    def _usable(self, category: AssetCategory) -> list[tuple[LoadedPriceSource, str | None]]:
        usable: list[tuple[LoadedPriceSource, str | None]] = []
        for loaded in self.by_category(category):
            if loaded.config.source_type not in REQUIRED_CREDENTIALS:
                usable.append((loaded, None))
                continue
            credential = self.credential(loaded)
            if credential is None:
                logger.warning(
                    "Price source %s (%s) requires credentials; skipping", loaded.name, loaded.config.source_type
                )
                continue
            usable.append((loaded, credential))
        return usable

    def build_equity_sources(self, clock: Clock) -> list[EquityPriceSource]:
        sources: list[EquityPriceSource] = []
        for loaded, api_key in self._usable(AssetCategory.EQUITY):
            source_type = loaded.config.source_type
            if source_type == PriceSourceType.TWELVE_DATA:
                sources.append(
                    TwelveDataSource(client=_TwelveDataClient(api_key=api_key), clock=clock, name=loaded.name)
                )
            elif source_type == PriceSourceType.ALPHA_VANTAGE:
                sources.append(
                    AlphaVantageSource(client=_AlphaVantageClient(api_key=api_key), clock=clock, name=loaded.name)
                )
            elif source_type == PriceSourceType.MARKETSTACK:
                sources.append(
                    MarketstackSource(client=_MarketstackClient(api_key=api_key), clock=clock, name=loaded.name)
                )
            else:
                sources.append(EodhdSource(client=_EodhdClient(api_key=api_key), clock=clock, name=loaded.name))
        return sources

    def build_crypto_sources(self, clock: Clock) -> list[CryptoPriceSource]:
        sources: list[CryptoPriceSource] = []
        for loaded, _ in self._usable(AssetCategory.CRYPTO):
            options = loaded.config.config
            quote_currency = str(options.get("quote_currency", "USD"))
            if loaded.config.source_type == PriceSourceType.COINGECKO:
                sources.append(
                    CoinGeckoSource(
                        quote_currency=quote_currency,
                        ids=options.get("ids"),
                        clock=clock,
                        name=loaded.name,
                    )
                )
            else:
                client = _CoinDeskClient(api_key=options.get("api_key"))
                sources.append(
                    CoinDeskSource(
                        market=str(options.get("market", "coinbase")),
                        quote_currency=quote_currency,
                        client=client,
                        clock=clock,
                        name=loaded.name,
                    )
                )
        return sources

    def build_fx_sources(self, clock: Clock) -> list[FxRateSource]:
        sources: list[FxRateSource] = []
        for loaded, app_id in self._usable(AssetCategory.FX):
            if loaded.config.source_type == PriceSourceType.FRANKFURTER:
                sources.append(FrankfurterSource(clock=clock, name=loaded.name))
            else:
                client = _OpenExchangeRatesClient(app_id=app_id)
                sources.append(OpenExchangeRatesSource(client=client, name=loaded.name))
        return sources

    def build_routers(self, clock: Clock) -> tuple[EquityPriceRouter, CryptoPriceRouter, FxRateRouter]:
        return (
            EquityPriceRouter(self.build_equity_sources(clock)),
            CryptoPriceRouter(self.build_crypto_sources(clock)),
            FxRateRouter(self.build_fx_sources(clock)),
        )


__all__ = [
    "AssetCategory",
    "LoadedPriceSource",
    "PriceSourceConfig",
    "PriceSourceRegistry",
    "PriceSourceType",
    "REQUIRED_CREDENTIALS",
    "load_source_config",
]
