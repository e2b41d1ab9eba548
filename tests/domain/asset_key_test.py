from datetime import date, datetime, timezone

import pytest

from domain.asset import CryptoAsset, CurrencyAsset, EquityAsset, crypto, currency, equity, same_asset
from domain.market_data import AssetRegistryEntry, asset_key, parse_date, sanitize_segment


def test_asset_key_formats_per_asset_type() -> None:
    assert asset_key(currency("usd")) == "currency/USD"
    assert asset_key(equity("aapl")) == "equity/AAPL"
    assert asset_key(equity("vod", "lse")) == "equity/VOD/LSE"
    assert asset_key(crypto("eth")) == "crypto/ETH"
    assert asset_key(crypto("usdc", "Arbitrum")) == "crypto/USDC/arbitrum"


def test_asset_key_is_case_insensitive() -> None:
    assert asset_key(equity("aapl", "xnas")) == asset_key(equity("AAPL", "XNAS"))
    assert asset_key(crypto(" btc ")) == asset_key(crypto("BTC"))
    assert same_asset(currency("eur"), currency("EUR"))


def test_asset_key_never_collides_across_types() -> None:
    keys = {asset_key(currency("ABC")), asset_key(equity("ABC")), asset_key(crypto("ABC"))}
    assert len(keys) == 3


def test_blank_optional_fields_are_dropped() -> None:
    assert asset_key(equity("AAPL", "   ")) == asset_key(equity("AAPL"))
    assert crypto("ETH", "").normalized().network is None


def test_numeric_usd_code_normalizes() -> None:
    assert asset_key(currency("840")) == "currency/USD"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("BRK/B", "BRK-B"),
        ("a\\b", "a-b"),
        ("nul\0byte", "nul-byte"),
        ("..", "_"),
        (".", "_"),
        ("   ", "_"),
    ],
)
def test_sanitize_segment(raw: str, expected: str) -> None:
    assert sanitize_segment(raw) == expected


def test_asset_key_sanitizes_path_traversal() -> None:
    key = asset_key(equity("..", "/"))
    assert key == "equity/_/-"
    assert ".." not in key.split("/")


def test_blank_identifiers_are_rejected() -> None:
    with pytest.raises(ValueError):
        CurrencyAsset(iso_code=" ")
    with pytest.raises(ValueError):
        EquityAsset(ticker="")
    with pytest.raises(ValueError):
        CryptoAsset(symbol="\t")


def test_parse_date_accepts_date_and_iso_string() -> None:
    assert parse_date("2024-01-15") == date(2024, 1, 15)
    assert parse_date(date(2024, 1, 15)) == date(2024, 1, 15)


@pytest.mark.parametrize("value", ["2024-13-01", "15/01/2024", "", "yesterday"])
def test_parse_date_rejects_malformed_input(value: str) -> None:
    with pytest.raises(ValueError):
        parse_date(value)


def test_parse_date_rejects_datetime() -> None:
    with pytest.raises(ValueError):
        parse_date(datetime(2024, 1, 15, tzinfo=timezone.utc))


def test_registry_entry_for_asset_uses_normalized_form() -> None:
    entry = AssetRegistryEntry.for_asset(equity("vod", "lse"))

    assert entry.id == "equity/VOD/LSE"
    assert entry.asset == EquityAsset(ticker="VOD", exchange="LSE")
    assert entry.provider_ids == {}
    assert entry.tz is None
