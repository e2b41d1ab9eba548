import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from domain.asset import crypto
from domain.clock import FixedClock
from domain.market_data import AssetRegistryEntry, FxRatePoint, PriceKind, PricePoint


def test_price_point_serializes_decimal_as_string_and_utc_timestamp() -> None:
    point = PricePoint(
        asset_key="equity/AAPL",
        as_of_date=date(2024, 1, 12),
        timestamp=datetime(2024, 1, 12, 21, 0, tzinfo=timezone(timedelta(hours=-5))),
        price=Decimal("185.50"),
        quote_currency="usd",
        kind=PriceKind.CLOSE,
        source="eodhd",
    )

    payload = json.loads(point.model_dump_json())

    assert payload["price"] == "185.50"
    assert payload["as_of_date"] == "2024-01-12"
    assert payload["kind"] == "close"
    assert payload["quote_currency"] == "USD"
    assert point.timestamp == datetime(2024, 1, 13, 2, 0, tzinfo=timezone.utc)
    assert PricePoint.model_validate_json(point.model_dump_json()) == point


def test_fx_rate_point_defaults_to_close_and_upper_cases_codes() -> None:
    point = FxRatePoint(
        base="eur",
        quote="usd",
        as_of_date=date(2024, 1, 12),
        timestamp=datetime(2024, 1, 12, 16, 0),
        rate=Decimal("1.0950"),
        source="frankfurter",
    )

    assert point.base == "EUR"
    assert point.quote == "USD"
    assert point.kind == "close"
    assert point.timestamp.tzinfo == timezone.utc


def test_registry_entry_round_trips_discriminated_asset() -> None:
    entry = AssetRegistryEntry.for_asset(crypto("usdc", "Base"))

    restored = AssetRegistryEntry.model_validate_json(entry.model_dump_json())

    assert restored == entry
    assert restored.asset.type == "crypto"


def test_fixed_clock_is_utc_and_stable() -> None:
    clock = FixedClock(datetime(2024, 1, 15, 23, 30))

    assert clock.now() == datetime(2024, 1, 15, 23, 30, tzinfo=timezone.utc)
    assert clock.now() == clock.now()
    assert clock.today() == date(2024, 1, 15)
