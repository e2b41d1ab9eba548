from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from domain.asset import equity
from domain.market_data import AssetKey, AssetRegistryEntry, FxRateKind, PriceKind
from services.price_store import (
    JsonlMarketDataStore,
    MalformedRecordError,
    MemoryMarketDataStore,
    NullMarketDataStore,
    sanitize_code,
)
from tests.helpers.stubs import make_fx, make_price

AAPL = AssetKey("equity/AAPL")
T0 = datetime(2024, 1, 12, 21, 0, tzinfo=timezone.utc)


def test_missing_partitions_read_as_empty(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path / "nothing-here")

    assert store.get_price(AAPL, date(2024, 1, 12), PriceKind.CLOSE) is None
    assert store.get_all_prices(AAPL) == []
    assert store.get_fx_rate("EUR", "USD", date(2024, 1, 12), FxRateKind.CLOSE) is None
    assert store.get_all_fx_rates("EUR", "USD") == []
    assert store.get_asset_entry(AAPL) is None


def test_prices_are_partitioned_by_asset_and_year(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    store.put_prices(
        [
            make_price(AAPL, date(2023, 12, 29), "192.53"),
            make_price(AAPL, date(2024, 1, 12), "185.50"),
        ]
    )

    assert (tmp_path / "prices" / "equity" / "AAPL" / "2023.jsonl").exists()
    assert (tmp_path / "prices" / "equity" / "AAPL" / "2024.jsonl").exists()
    assert {p.as_of_date for p in store.get_all_prices(AAPL)} == {date(2023, 12, 29), date(2024, 1, 12)}


def test_records_are_json_lines_with_string_decimals(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    store.put_prices([make_price(AAPL, date(2024, 1, 12), "185.50", timestamp=T0)])

    lines = (tmp_path / "prices" / "equity" / "AAPL" / "2024.jsonl").read_text().splitlines()

    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["price"] == "185.50"
    assert record["as_of_date"] == "2024-01-12"
    assert record["asset_key"] == "equity/AAPL"


def test_point_lookup_picks_latest_timestamp_not_insertion_order(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    day = date(2024, 1, 12)
    store.put_prices(
        [
            make_price(AAPL, day, "186.00", timestamp=T0 + timedelta(hours=1), source="late"),
            make_price(AAPL, day, "185.00", timestamp=T0, source="early"),
        ]
    )

    result = store.get_price(AAPL, day, PriceKind.CLOSE)

    assert result is not None
    assert result.source == "late"


def test_point_lookup_matches_kind_exactly(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    day = date(2024, 1, 12)
    store.put_prices([make_price(AAPL, day, "185.00", kind=PriceKind.QUOTE)])

    assert store.get_price(AAPL, day, PriceKind.CLOSE) is None
    assert store.get_price(AAPL, day, PriceKind.QUOTE) is not None


def test_fx_partition_uses_sanitized_pair(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    store.put_fx_rates([make_fx("EUR", "USD", date(2024, 1, 12), "1.0950")])

    assert (tmp_path / "fx" / "EUR-USD" / "2024.jsonl").exists()
    point = store.get_fx_rate("eur", "usd", date(2024, 1, 12), FxRateKind.CLOSE)
    assert point is not None
    assert str(point.rate) == "1.0950"


def test_sanitize_code() -> None:
    assert sanitize_code(" usd ") == "USD"
    assert sanitize_code("us/d") == "US_D"


def test_asset_registry_last_write_wins(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    first = AssetRegistryEntry.for_asset(equity("AAPL"))
    second = first.model_copy(update={"provider_ids": {"eodhd": "AAPL.US"}, "tz": "America/New_York"})

    store.upsert_asset_entry(first)
    store.upsert_asset_entry(second)

    assert store.get_asset_entry(AAPL) == second
    assert len((tmp_path / "assets" / "index.jsonl").read_text().splitlines()) == 2


def test_blank_lines_are_skipped(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    store.put_prices([make_price(AAPL, date(2024, 1, 12), "185.50")])
    path = tmp_path / "prices" / "equity" / "AAPL" / "2024.jsonl"
    path.write_text("\n" + path.read_text() + "\n\n")

    assert len(store.get_all_prices(AAPL)) == 1


def test_malformed_record_raises_with_location(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    store.put_prices([make_price(AAPL, date(2024, 1, 12), "185.50")])
    path = tmp_path / "prices" / "equity" / "AAPL" / "2024.jsonl"
    with path.open("a") as handle:
        handle.write("{not json\n")

    with pytest.raises(MalformedRecordError) as exc_info:
        store.get_all_prices(AAPL)

    assert exc_info.value.path == path
    assert exc_info.value.line_number == 2


def test_record_failing_validation_raises(tmp_path: Path) -> None:
    store = JsonlMarketDataStore(root_dir=tmp_path)
    path = tmp_path / "fx" / "EUR-USD" / "2024.jsonl"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"base": "EUR", "quote": "USD", "rate": "abc"}) + "\n")

    with pytest.raises(MalformedRecordError):
        store.get_fx_rate("EUR", "USD", date(2024, 1, 12), FxRateKind.CLOSE)


def test_memory_store_keeps_one_point_per_key() -> None:
    store = MemoryMarketDataStore()
    day = date(2024, 1, 12)
    store.put_prices([make_price(AAPL, day, "185.00")])
    store.put_prices([make_price(AAPL, day, "186.00")])

    assert len(store.get_all_prices(AAPL)) == 1
    point = store.get_price(AAPL, day, PriceKind.CLOSE)
    assert point is not None
    assert str(point.price) == "186.00"


def test_null_store_drops_everything() -> None:
    store = NullMarketDataStore()
    store.put_prices([make_price(AAPL, date(2024, 1, 12), "185.00")])
    store.put_fx_rates([make_fx("EUR", "USD", date(2024, 1, 12), "1.09")])
    store.upsert_asset_entry(AssetRegistryEntry.for_asset(equity("AAPL")))

    assert store.get_all_prices(AAPL) == []
    assert store.get_all_fx_rates("EUR", "USD") == []
    assert store.get_asset_entry(AAPL) is None
