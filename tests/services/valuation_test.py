from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from domain.asset import crypto, currency, equity
from domain.clock import FixedClock
from domain.market_data import AssetKey
from services.price_service import MarketDataService
from services.price_sources import EquityPriceRouter
from services.price_store import JsonlMarketDataStore, MemoryMarketDataStore
from services.valuation import MissingMarketData, ValuationConverter
from tests.helpers.stubs import StubPriceSource, make_fx, make_price

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def _converter(store: MemoryMarketDataStore | JsonlMarketDataStore) -> ValuationConverter:
    return ValuationConverter(MarketDataService(store, clock=FixedClock(NOW)))


def test_equity_valued_from_last_stored_close_without_fetching(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    store.put_prices([make_price(AssetKey("equity/AAPL"), date(2024, 1, 12), "185.50")])
    source = StubPriceSource("eodhd")
    service = MarketDataService(store, clock=FixedClock(NOW), equity_router=EquityPriceRouter([source]))

    valuation = ValuationConverter(service).value_in_reporting_currency(equity("AAPL"), "10", "USD", "2024-01-15")

    assert valuation.value == "1855"
    assert valuation.missing is None
    assert valuation.price is not None
    assert valuation.price.as_of_date == date(2024, 1, 12)
    assert source.close_calls == []
    assert source.quote_calls == 0


def test_currency_in_reporting_currency_needs_no_market_data() -> None:
    valuation = _converter(MemoryMarketDataStore()).value_in_reporting_currency(
        currency("usd"), Decimal("12.50"), "USD", date(2024, 1, 15)
    )

    assert valuation.value == "12.5"
    assert valuation.fx is None


def test_missing_fx_is_reported_not_zero() -> None:
    valuation = _converter(MemoryMarketDataStore()).value_in_reporting_currency(
        currency("EUR"), "100", "USD", date(2024, 1, 15)
    )

    assert valuation.value is None
    assert valuation.missing == MissingMarketData.FX
    assert valuation.is_missing


def test_missing_price_is_reported() -> None:
    valuation = _converter(MemoryMarketDataStore()).value_in_reporting_currency(
        crypto("BTC"), "0.5", "USD", date(2024, 1, 15)
    )

    assert valuation.value is None
    assert valuation.missing == MissingMarketData.PRICE


def test_foreign_currency_converted_with_stored_rate() -> None:
    store = MemoryMarketDataStore()
    store.put_fx_rates([make_fx("EUR", "USD", date(2024, 1, 12), "1.0950")])

    valuation = _converter(store).value_in_reporting_currency(currency("eur"), "100", "usd", date(2024, 1, 15))

    assert valuation.value == "109.5"
    assert valuation.fx is not None


def test_price_quoted_in_other_currency_is_converted() -> None:
    store = MemoryMarketDataStore()
    store.put_prices([make_price(AssetKey("equity/VOD/LSE"), date(2024, 1, 12), "0.70", quote_currency="GBP")])
    store.put_fx_rates([make_fx("GBP", "USD", date(2024, 1, 12), "1.2700")])

    valuation = _converter(store).value_in_reporting_currency(
        equity("VOD", "LSE"), "1000", "USD", date(2024, 1, 15), decimal_places=2
    )

    assert valuation.value == "889"
    assert valuation.price is not None
    assert valuation.fx is not None


def test_price_without_fx_keeps_price_for_diagnostics() -> None:
    store = MemoryMarketDataStore()
    store.put_prices([make_price(AssetKey("equity/VOD/LSE"), date(2024, 1, 12), "0.70", quote_currency="GBP")])

    valuation = _converter(store).value_in_reporting_currency(equity("VOD", "LSE"), "1000", "USD", date(2024, 1, 15))

    assert valuation.missing == MissingMarketData.FX
    assert valuation.price is not None


@pytest.mark.parametrize(
    ("amount", "places", "expected"),
    [
        ("1.005", 2, "1.01"),
        ("1.004", 2, "1"),
        ("2.5", 0, "3"),
        ("-2.5", 0, "-3"),
        ("0.000", 2, "0"),
        ("123.4500", None, "123.45"),
    ],
)
def test_rounding_is_half_up_and_trimmed(amount: str, places: int | None, expected: str) -> None:
    valuation = _converter(MemoryMarketDataStore()).value_in_reporting_currency(
        currency("USD"), amount, "USD", date(2024, 1, 15), decimal_places=places
    )

    assert valuation.value == expected


def test_invalid_amount_raises() -> None:
    with pytest.raises(ValueError):
        _converter(MemoryMarketDataStore()).value_in_reporting_currency(currency("USD"), "ten", "USD", "2024-01-15")
