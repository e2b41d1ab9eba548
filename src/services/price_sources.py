from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import date
from typing import Protocol, TypeVar

from domain.asset import Asset
from domain.market_data import AssetKey, FxRatePoint, PricePoint

logger = logging.getLogger(__name__)

_SourceT = TypeVar("_SourceT", bound="_NamedSource")
_ResultT = TypeVar("_ResultT")


class _NamedSource(Protocol):
    name: str


class EquityPriceSource(Protocol):
    name: str

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None: ...

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None: ...


class CryptoPriceSource(Protocol):
    name: str

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None: ...

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None: ...


class FxRateSource(Protocol):
    name: str

    def fetch_close(self, base: str, quote: str, as_of_date: date) -> FxRatePoint | None: ...


class MarketDataSource(Protocol):
    """Catch-all provider tried after the type-specific routers."""

    name: str

    def fetch_price(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None: ...

    def fetch_fx_rate(self, base: str, quote: str, as_of_date: date) -> FxRatePoint | None: ...


def first_available(
    sources: Sequence[_SourceT],
    fetch: Callable[[_SourceT], _ResultT | None],
    *,
    what: str,
) -> _ResultT | None:
    """Consult ``sources`` in order and return the first non-None result.

    A source that raises counts as having no data; the error is logged and the
    next source is tried.
    """
    for source in sources:
        try:
            result = fetch(source)
        except Exception:
            logger.warning("Source %s failed to fetch %s", source.name, what, exc_info=True)
            continue
        if result is not None:
            logger.debug("Source %s returned %s", source.name, what)
            return result
        logger.debug("Source %s had no %s", source.name, what)
    return None


class EquityPriceRouter:
    def __init__(self, sources: Sequence[EquityPriceSource]) -> None:
        self.sources = tuple(sources)

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        return first_available(
            self.sources,
            lambda source: source.fetch_close(asset, key, as_of_date),
            what=f"close for {key} on {as_of_date.isoformat()}",
        )

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        return first_available(self.sources, lambda source: source.fetch_quote(asset, key), what=f"quote for {key}")


class CryptoPriceRouter:
    def __init__(self, sources: Sequence[CryptoPriceSource]) -> None:
        self.sources = tuple(sources)

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        return first_available(
            self.sources,
            lambda source: source.fetch_close(asset, key, as_of_date),
            what=f"close for {key} on {as_of_date.isoformat()}",
        )

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        return first_available(self.sources, lambda source: source.fetch_quote(asset, key), what=f"quote for {key}")


class FxRateRouter:
    def __init__(self, sources: Sequence[FxRateSource]) -> None:
        self.sources = tuple(sources)

    def fetch_close(self, base: str, quote: str, as_of_date: date) -> FxRatePoint | None:
        return first_available(
            self.sources,
            lambda source: source.fetch_close(base, quote, as_of_date),
            what=f"{base}->{quote} rate on {as_of_date.isoformat()}",
        )


__all__ = [
    "CryptoPriceRouter",
    "CryptoPriceSource",
    "EquityPriceRouter",
    "EquityPriceSource",
    "FxRateRouter",
    "FxRateSource",
    "MarketDataSource",
    "first_available",
]
