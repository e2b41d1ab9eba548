from __future__ import annotations

from typing import Annotated, Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ISO 4217 numeric codes some institutions report instead of alpha codes.
_NUMERIC_CURRENCY_CODES = {"840": "USD"}


def _normalize_upper(value: str) -> str:
    return value.strip().upper()


def _normalize_optional(value: str | None, *, upper: bool) -> str | None:
    if value is None:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    return trimmed.upper() if upper else trimmed.lower()


def normalize_currency_code(value: str) -> str:
    trimmed = value.strip()
    return _NUMERIC_CURRENCY_CODES.get(trimmed, trimmed.upper())


class CurrencyAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["currency"] = "currency"
    iso_code: str

    @model_validator(mode="after")
    def _validate_iso_code(self) -> CurrencyAsset:
        if not self.iso_code.strip():
            raise ValueError("CurrencyAsset.iso_code must be non-empty")
        return self

    def normalized(self) -> CurrencyAsset:
        return CurrencyAsset(iso_code=normalize_currency_code(self.iso_code))


class EquityAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["equity"] = "equity"
    ticker: str
    exchange: str | None = None

    @model_validator(mode="after")
    def _validate_ticker(self) -> EquityAsset:
        if not self.ticker.strip():
            raise ValueError("EquityAsset.ticker must be non-empty")
        return self

    def normalized(self) -> EquityAsset:
        return EquityAsset(
            ticker=_normalize_upper(self.ticker),
            exchange=_normalize_optional(self.exchange, upper=True),
        )


class CryptoAsset(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["crypto"] = "crypto"
    symbol: str
    network: str | None = None

    @model_validator(mode="after")
    def _validate_symbol(self) -> CryptoAsset:
        if not self.symbol.strip():
            raise ValueError("CryptoAsset.symbol must be non-empty")
        return self

    def normalized(self) -> CryptoAsset:
        return CryptoAsset(
            symbol=_normalize_upper(self.symbol),
            network=_normalize_optional(self.network, upper=False),
        )


Asset: TypeAlias = Annotated[CurrencyAsset | EquityAsset | CryptoAsset, Field(discriminator="type")]


def currency(iso_code: str) -> CurrencyAsset:
    return CurrencyAsset(iso_code=iso_code.strip())


def equity(ticker: str, exchange: str | None = None) -> EquityAsset:
    return EquityAsset(ticker=ticker.strip(), exchange=_strip_optional(exchange))


def crypto(symbol: str, network: str | None = None) -> CryptoAsset:
    return CryptoAsset(symbol=symbol.strip(), network=_strip_optional(network))


def _strip_optional(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


def same_asset(left: Asset, right: Asset) -> bool:
    """Case-insensitive asset equality; compares normalized forms."""
    return left.normalized() == right.normalized()


__all__ = [
    "Asset",
    "CryptoAsset",
    "CurrencyAsset",
    "EquityAsset",
    "crypto",
    "currency",
    "equity",
    "normalize_currency_code",
    "same_asset",
]
