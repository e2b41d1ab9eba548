from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import NewType

from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain.asset import Asset, CryptoAsset, CurrencyAsset, EquityAsset

AssetKey = NewType("AssetKey", str)

_UNSAFE_SEGMENT_CHARS = ("/", "\\", "\0")


def sanitize_segment(value: str) -> str:
    """Make a single key segment safe to use as a directory name.

    Path separators and NUL are replaced with ``-``; segments that end up
    empty, ``.`` or ``..`` collapse to ``_``.
    """
    sanitized = value.strip()
    for char in _UNSAFE_SEGMENT_CHARS:
        sanitized = sanitized.replace(char, "-")
    if sanitized in ("", ".", ".."):
        return "_"
    return sanitized


def asset_key(asset: Asset) -> AssetKey:
    normalized = asset.normalized()
    match normalized:
        case CurrencyAsset(iso_code=iso_code):
            parts = ["currency", sanitize_segment(iso_code).upper()]
        case EquityAsset(ticker=ticker, exchange=exchange):
            parts = ["equity", sanitize_segment(ticker).upper()]
            if exchange is not None:
                parts.append(sanitize_segment(exchange).upper())
        case CryptoAsset(symbol=symbol, network=network):
            parts = ["crypto", sanitize_segment(symbol).upper()]
            if network is not None:
                parts.append(sanitize_segment(network).lower())
        case _:
            raise TypeError(f"Unsupported asset type: {type(asset).__name__}")
    return AssetKey("/".join(parts))


def parse_date(value: date | str) -> date:
    """Accept a ``date`` or a ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        raise ValueError(f"Expected a calendar date, got datetime {value.isoformat()}")
    if isinstance(value, date):
        return value
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD") from exc
    return parsed.date()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PriceKind(StrEnum):
    CLOSE = "close"
    ADJ_CLOSE = "adj_close"
    QUOTE = "quote"


class FxRateKind(StrEnum):
    CLOSE = "close"


class PricePoint(BaseModel):
    """One price observation; ``price`` is quoted in ``quote_currency``."""

    model_config = ConfigDict(frozen=True)

    asset_key: AssetKey
    as_of_date: date
    timestamp: datetime
    price: Decimal
    quote_currency: str
    kind: PriceKind
    source: str

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("quote_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()


class FxRatePoint(BaseModel):
    """Units of ``quote`` per one unit of ``base``."""

    model_config = ConfigDict(frozen=True)

    base: str
    quote: str
    as_of_date: date
    timestamp: datetime
    rate: Decimal
    kind: FxRateKind = FxRateKind.CLOSE
    source: str

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("base", "quote")
    @classmethod
    def _upper_code(cls, value: str) -> str:
        return value.strip().upper()


class AssetRegistryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: AssetKey
    asset: Asset
    provider_ids: dict[str, str] = Field(default_factory=dict)
    tz: str | None = None

    @classmethod
    def for_asset(cls, asset: Asset) -> AssetRegistryEntry:
        normalized = asset.normalized()
        return cls(id=asset_key(normalized), asset=normalized)


__all__ = [
    "AssetKey",
    "AssetRegistryEntry",
    "FxRateKind",
    "FxRatePoint",
    "PriceKind",
    "PricePoint",
    "asset_key",
    "parse_date",
    "sanitize_segment",
]
