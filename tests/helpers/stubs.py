from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import date, datetime, timezone
from decimal import Decimal

from domain.asset import Asset
from domain.market_data import (
    AssetKey,
    AssetRegistryEntry,
    FxRateKind,
    FxRatePoint,
    PriceKind,
    PricePoint,
)
from services.price_store import MarketDataStore

DEFAULT_TS = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def make_price(
    key: str,
    as_of_date: date,
    price: str,
    *,
    kind: PriceKind = PriceKind.CLOSE,
    timestamp: datetime = DEFAULT_TS,
    quote_currency: str = "USD",
    source: str = "test",
) -> PricePoint:
    return PricePoint(
        asset_key=AssetKey(key),
        as_of_date=as_of_date,
        timestamp=timestamp,
        price=Decimal(price),
        quote_currency=quote_currency,
        kind=kind,
        source=source,
    )


def make_fx(
    base: str,
    quote: str,
    as_of_date: date,
    rate: str,
    *,
    timestamp: datetime = DEFAULT_TS,
    source: str = "test",
) -> FxRatePoint:
    return FxRatePoint(
        base=base,
        quote=quote,
        as_of_date=as_of_date,
        timestamp=timestamp,
        rate=Decimal(rate),
        kind=FxRateKind.CLOSE,
        source=source,
    )


class StubPriceSource:
    """Equity/crypto source answering from a fixed table of closes and an optional quote."""

    def __init__(
        self,
        name: str,
        closes: dict[date, PricePoint] | None = None,
        quote: PricePoint | None = None,
        error: Exception | None = None,
    ) -> None:
        self.name = name
        self.closes = closes or {}
        self.quote = quote
        self.error = error
        self.close_calls: list[date] = []
        self.quote_calls = 0

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        self.close_calls.append(as_of_date)
        if self.error is not None:
            raise self.error
        return self.closes.get(as_of_date)

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        self.quote_calls += 1
        if self.error is not None:
            raise self.error
        return self.quote


class StubFxSource:
    def __init__(self, name: str, rates: dict[date, FxRatePoint] | None = None) -> None:
        self.name = name
        self.rates = rates or {}
        self.calls: list[tuple[str, str, date]] = []

    def fetch_close(self, base: str, quote: str, as_of_date: date) -> FxRatePoint | None:
        self.calls.append((base, quote, as_of_date))
        return self.rates.get(as_of_date)


class StubProvider:
    def __init__(
        self,
        name: str = "provider",
        price: Callable[[date], PricePoint | None] | None = None,
        fx: Callable[[date], FxRatePoint | None] | None = None,
    ) -> None:
        self.name = name
        self._price = price
        self._fx = fx
        self.price_calls: list[date] = []
        self.fx_calls: list[date] = []

    def fetch_price(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        self.price_calls.append(as_of_date)
        return self._price(as_of_date) if self._price is not None else None

    def fetch_fx_rate(self, base: str, quote: str, as_of_date: date) -> FxRatePoint | None:
        self.fx_calls.append(as_of_date)
        return self._fx(as_of_date) if self._fx is not None else None


class RecordingStore(MarketDataStore):
    """Wraps a store and records every call made to it."""

    def __init__(self, inner: MarketDataStore) -> None:
        self.inner = inner
        self.calls: list[str] = []
        self.price_writes: list[PricePoint] = []
        self.fx_writes: list[FxRatePoint] = []

    def get_price(self, key: AssetKey, as_of_date: date, kind: PriceKind) -> PricePoint | None:
        self.calls.append("get_price")
        return self.inner.get_price(key, as_of_date, kind)

    def get_all_prices(self, key: AssetKey) -> list[PricePoint]:
        self.calls.append("get_all_prices")
        return self.inner.get_all_prices(key)

    def put_prices(self, points: Iterable[PricePoint]) -> None:
        self.calls.append("put_prices")
        items = list(points)
        self.price_writes.extend(items)
        self.inner.put_prices(items)

    def get_fx_rate(self, base: str, quote: str, as_of_date: date, kind: FxRateKind) -> FxRatePoint | None:
        self.calls.append("get_fx_rate")
        return self.inner.get_fx_rate(base, quote, as_of_date, kind)

    def get_all_fx_rates(self, base: str, quote: str) -> list[FxRatePoint]:
        self.calls.append("get_all_fx_rates")
        return self.inner.get_all_fx_rates(base, quote)

    def put_fx_rates(self, points: Iterable[FxRatePoint]) -> None:
        self.calls.append("put_fx_rates")
        items = list(points)
        self.fx_writes.extend(items)
        self.inner.put_fx_rates(items)

    def get_asset_entry(self, key: AssetKey) -> AssetRegistryEntry | None:
        self.calls.append("get_asset_entry")
        return self.inner.get_asset_entry(key)

    def upsert_asset_entry(self, entry: AssetRegistryEntry) -> None:
        self.calls.append("upsert_asset_entry")
        self.inner.upsert_asset_entry(entry)
