from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import StrEnum

from domain.asset import Asset, CurrencyAsset, normalize_currency_code
from domain.market_data import FxRatePoint, PricePoint, parse_date
from utils.formatting import format_decimal_rounded

from .price_service import MarketDataService

logger = logging.getLogger(__name__)


class MissingMarketData(StrEnum):
    PRICE = "price"
    FX = "fx"


@dataclass(frozen=True)
class Valuation:
    """Outcome of valuing one amount.

    Exactly one of ``value`` and ``missing`` is set. A missing valuation must be
    skipped or flagged by the caller, never counted as zero.
    """

    value: str | None
    missing: MissingMarketData | None
    price: PricePoint | None = None
    fx: FxRatePoint | None = None

    @property
    def is_missing(self) -> bool:
        return self.missing is not None


def _to_decimal(amount: Decimal | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    try:
        return Decimal(amount.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal amount {amount!r}") from exc


class ValuationConverter:
    """Cache-only conversion of asset amounts into a reporting currency.

    Lookups go through the store-only paths of ``MarketDataService`` and never
    trigger an external fetch.
    """

    def __init__(self, market_data: MarketDataService) -> None:
        self.market_data = market_data

    def value_in_reporting_currency(
        self,
        asset: Asset,
        amount: Decimal | str,
        target_currency: str,
        as_of_date: date | str,
        decimal_places: int | None = None,
    ) -> Valuation:
        quantity = _to_decimal(amount)
        reporting = normalize_currency_code(target_currency)
        query_date = parse_date(as_of_date)
        normalized = asset.normalized()

        if isinstance(normalized, CurrencyAsset):
            if normalized.iso_code == reporting:
                return Valuation(value=format_decimal_rounded(quantity, decimal_places), missing=None)

            fx = self.market_data.fx_from_store(normalized.iso_code, reporting, query_date)
            if fx is None:
                logger.debug("Missing %s->%s rate on or before %s", normalized.iso_code, reporting, query_date)
                return Valuation(value=None, missing=MissingMarketData.FX)
            return Valuation(
                value=format_decimal_rounded(quantity * fx.rate, decimal_places),
                missing=None,
                fx=fx,
            )

        price = self.market_data.price_from_store(normalized, query_date)
        if price is None:
            logger.debug("Missing price for %s on or before %s", normalized, query_date)
            return Valuation(value=None, missing=MissingMarketData.PRICE)

        value_in_quote = quantity * price.price
        quote_currency = normalize_currency_code(price.quote_currency)
        if quote_currency == reporting:
            return Valuation(value=format_decimal_rounded(value_in_quote, decimal_places), missing=None, price=price)

        fx = self.market_data.fx_from_store(quote_currency, reporting, query_date)
        if fx is None:
            logger.debug("Missing %s->%s rate on or before %s", quote_currency, reporting, query_date)
            return Valuation(value=None, missing=MissingMarketData.FX, price=price)
        return Valuation(
            value=format_decimal_rounded(value_in_quote * fx.rate, decimal_places),
            missing=None,
            price=price,
            fx=fx,
        )


__all__ = ["MissingMarketData", "Valuation", "ValuationConverter"]
