from __future__ import annotations

import logging
import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import NamedTuple, TypeVar

from domain.asset import Asset, CryptoAsset, EquityAsset
from domain.clock import Clock, SystemClock
from domain.market_data import (
    AssetKey,
    AssetRegistryEntry,
    FxRateKind,
    FxRatePoint,
    PriceKind,
    PricePoint,
    asset_key,
    parse_date,
)

from .price_sources import CryptoPriceRouter, EquityPriceRouter, FxRateRouter, MarketDataSource, first_available
from .price_store import MarketDataStore

logger = logging.getLogger(__name__)

_ObservationT = TypeVar("_ObservationT", PricePoint, FxRatePoint)

IDENTITY_SOURCE = "identity"


class MarketDataNotFoundError(LookupError):
    def __init__(self, message: str, *, subject: str, as_of_date: date) -> None:
        super().__init__(message)
        self.subject = subject
        self.as_of_date = as_of_date


class PriceLookup(NamedTuple):
    point: PricePoint
    fetched: bool


class FxLookup(NamedTuple):
    point: FxRatePoint
    fetched: bool


@dataclass(frozen=True)
class MarketDataConfig:
    # None scans the whole store history for the latest close on or before the date.
    store_lookback_days: int | None = None
    fetch_lookback_days: int = 7
    quote_staleness: timedelta = timedelta(minutes=5)
    # FX writes are appended unconditionally unless this is set.
    idempotent_fx_writes: bool = False

    def __post_init__(self) -> None:
        if self.store_lookback_days is not None and self.store_lookback_days < 0:
            raise ValueError("store_lookback_days must be >= 0")
        if self.fetch_lookback_days < 0:
            raise ValueError("fetch_lookback_days must be >= 0")
        if self.quote_staleness <= timedelta(0):
            raise ValueError("quote_staleness must be positive")


class _KeyedLocks:
    """Per-key locks that are dropped once no thread holds or waits on them."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, tuple[threading.Lock, int]] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                _, users = self._locks[key]
                if users == 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)


def _normalize_code(value: str) -> str:
    return value.strip().upper()


def _walk_back(start: date, days: int) -> Iterator[date]:
    for offset in range(days + 1):
        yield start - timedelta(days=offset)


def _latest_close_on_or_before(points: list[_ObservationT], as_of_date: date) -> _ObservationT | None:
    candidates = [point for point in points if point.kind == "close" and point.as_of_date <= as_of_date]
    if not candidates:
        return None
    return max(candidates, key=lambda point: (point.as_of_date, point.timestamp))


class MarketDataService:
    """Price and FX lookups over a store with external fallback.

    Store reads come first for close lookups; misses walk back day by day
    through the type-specific routers and then the generic provider, and any
    fetched observation is written back before it is returned. The ``force``
    variants consult external sources first and report whether the result was
    freshly fetched.
    """

    def __init__(
        self,
        store: MarketDataStore,
        *,
        config: MarketDataConfig | None = None,
        clock: Clock | None = None,
        equity_router: EquityPriceRouter | None = None,
        crypto_router: CryptoPriceRouter | None = None,
        fx_router: FxRateRouter | None = None,
        provider: MarketDataSource | None = None,
    ) -> None:
        self.store = store
        self.config = config or MarketDataConfig()
        self.clock = clock or SystemClock()
        self.equity_router = equity_router
        self.crypto_router = crypto_router
        self.fx_router = fx_router
        self.provider = provider
        self._locks = _KeyedLocks()

    # Store-only lookups

    def price_from_store(self, asset: Asset, as_of_date: date | str) -> PricePoint | None:
        query_date = parse_date(as_of_date)
        key = asset_key(asset)
        lookback = self.config.store_lookback_days

        if lookback is not None:
            for target in _walk_back(query_date, lookback):
                point = self.store.get_price(key, target, PriceKind.CLOSE)
                if point is not None:
                    return point
            return None

        return _latest_close_on_or_before(self.store.get_all_prices(key), query_date)

    def valuation_price_from_store(
        self, asset: Asset, as_of_date: date | str, *, allow_quote_fallback: bool = False
    ) -> PricePoint | None:
        query_date = parse_date(as_of_date)
        close = self.price_from_store(asset, query_date)
        if close is not None or not allow_quote_fallback:
            return close
        return self.store.get_price(asset_key(asset), query_date, PriceKind.QUOTE)

    def fx_from_store(self, base: str, quote: str, as_of_date: date | str) -> FxRatePoint | None:
        query_date = parse_date(as_of_date)
        base_code = _normalize_code(base)
        quote_code = _normalize_code(quote)
        lookback = self.config.store_lookback_days

        if lookback is not None:
            for target in _walk_back(query_date, lookback):
                point = self.store.get_fx_rate(base_code, quote_code, target, FxRateKind.CLOSE)
                if point is not None:
                    return point
            return None

        return _latest_close_on_or_before(self.store.get_all_fx_rates(base_code, quote_code), query_date)

    # Close prices

    def price_close(self, asset: Asset, as_of_date: date | str) -> PricePoint:
        query_date = parse_date(as_of_date)
        cached = self.price_from_store(asset, query_date)
        if cached is not None:
            logger.debug("Store hit for %s close on or before %s", asset_key(asset), query_date)
            return cached

        fetched = self._fetch_close_with_lookback(asset, query_date)
        if fetched is not None:
            return fetched

        raise self._price_not_found(asset, query_date)

    def price_close_force(self, asset: Asset, as_of_date: date | str) -> PriceLookup:
        query_date = parse_date(as_of_date)
        fetched = self._fetch_close_with_lookback(asset, query_date)
        if fetched is not None:
            return PriceLookup(fetched, True)

        cached = self.price_from_store(asset, query_date)
        if cached is not None:
            return PriceLookup(cached, False)

        raise self._price_not_found(asset, query_date)

    # Latest prices

    def price_latest(self, asset: Asset, as_of_date: date | str) -> PricePoint:
        return self.price_latest_with_status(asset, as_of_date).point

    def price_latest_with_status(self, asset: Asset, as_of_date: date | str) -> PriceLookup:
        return self._price_latest(asset, parse_date(as_of_date), force=False)

    def price_latest_force(self, asset: Asset, as_of_date: date | str) -> PriceLookup:
        return self._price_latest(asset, parse_date(as_of_date), force=True)

    # FX rates

    def fx_close(self, base: str, quote: str, as_of_date: date | str) -> FxRatePoint:
        query_date = parse_date(as_of_date)
        base_code = _normalize_code(base)
        quote_code = _normalize_code(quote)
        if base_code == quote_code:
            return self._identity_rate(base_code, query_date)

        cached = self.fx_from_store(base_code, quote_code, query_date)
        if cached is not None:
            return cached

        fetched = self._fetch_fx_with_lookback(base_code, quote_code, query_date)
        if fetched is not None:
            return fetched

        raise self._fx_not_found(base_code, quote_code, query_date)

    def fx_close_force(self, base: str, quote: str, as_of_date: date | str) -> FxLookup:
        query_date = parse_date(as_of_date)
        base_code = _normalize_code(base)
        quote_code = _normalize_code(quote)
        if base_code == quote_code:
            return FxLookup(self._identity_rate(base_code, query_date), False)

        fetched = self._fetch_fx_with_lookback(base_code, quote_code, query_date)
        if fetched is not None:
            return FxLookup(fetched, True)

        cached = self.fx_from_store(base_code, quote_code, query_date)
        if cached is not None:
            return FxLookup(cached, False)

        raise self._fx_not_found(base_code, quote_code, query_date)

    # Writes

    def register_asset(self, asset: Asset) -> AssetRegistryEntry:
        entry = AssetRegistryEntry.for_asset(asset)
        with self._locks.hold(("asset", entry.id)):
            existing = self.store.get_asset_entry(entry.id)
            if existing is not None:
                return existing
            self.store.upsert_asset_entry(entry)
        logger.info("Registered asset %s", entry.id)
        return entry

    def store_price(self, point: PricePoint) -> bool:
        """Persist ``point`` unless an equal-or-newer observation already exists.

        Returns True when the point was written.
        """
        with self._locks.hold(("price", point.asset_key, point.as_of_date, point.kind)):
            existing = self.store.get_price(point.asset_key, point.as_of_date, point.kind)
            if existing is not None and existing.timestamp >= point.timestamp:
                logger.debug(
                    "Skipping %s %s for %s: stored observation is at least as fresh",
                    point.kind,
                    point.as_of_date,
                    point.asset_key,
                )
                return False
            self.store.put_prices([point])
        return True

    def store_fx_rate(self, point: FxRatePoint) -> bool:
        if not self.config.idempotent_fx_writes:
            self.store.put_fx_rates([point])
            return True

        with self._locks.hold(("fx", point.base, point.quote, point.as_of_date, point.kind)):
            existing = self.store.get_fx_rate(point.base, point.quote, point.as_of_date, point.kind)
            if existing is not None and existing.timestamp >= point.timestamp:
                return False
            self.store.put_fx_rates([point])
        return True

    # Internals

    def _price_latest(self, asset: Asset, query_date: date, *, force: bool) -> PriceLookup:
        normalized = asset.normalized()
        key = asset_key(normalized)

        if not force:
            cached_quote = self.store.get_price(key, query_date, PriceKind.QUOTE)
            if cached_quote is not None and self._is_fresh(cached_quote):
                logger.debug("Using cached quote for %s from %s", key, cached_quote.timestamp.isoformat())
                return PriceLookup(cached_quote, False)

        live = self._fetch_quote(normalized, key)
        if live is not None:
            self._persist_price(live)
            return PriceLookup(live, True)

        close = self.price_from_store(normalized, query_date)
        if close is not None:
            return PriceLookup(close, False)

        raise MarketDataNotFoundError(
            f"No price found for asset {key} on or before {query_date.isoformat()}",
            subject=key,
            as_of_date=query_date,
        )

    def _is_fresh(self, quote: PricePoint) -> bool:
        return self.clock.now() - quote.timestamp < self.config.quote_staleness

    def _identity_rate(self, code: str, query_date: date) -> FxRatePoint:
        return FxRatePoint(
            base=code,
            quote=code,
            as_of_date=query_date,
            timestamp=self.clock.now(),
            rate=Decimal("1"),
            kind=FxRateKind.CLOSE,
            source=IDENTITY_SOURCE,
        )

    def _fetch_close_with_lookback(self, asset: Asset, query_date: date) -> PricePoint | None:
        normalized = asset.normalized()
        key = asset_key(normalized)
        for target in _walk_back(query_date, self.config.fetch_lookback_days):
            fetched = self._fetch_close(normalized, key, target)
            if fetched is not None:
                self._persist_price(fetched)
                return fetched
        return None

    def _fetch_fx_with_lookback(self, base: str, quote: str, query_date: date) -> FxRatePoint | None:
        for target in _walk_back(query_date, self.config.fetch_lookback_days):
            fetched = self._fetch_fx(base, quote, target)
            if fetched is not None:
                if self.store_fx_rate(fetched):
                    logger.info("Stored %s->%s rate for %s from %s", base, quote, fetched.as_of_date, fetched.source)
                return fetched
        return None

    def _persist_price(self, point: PricePoint) -> None:
        if self.store_price(point):
            logger.info("Stored %s %s for %s from %s", point.kind, point.as_of_date, point.asset_key, point.source)

    def _fetch_close(self, asset: Asset, key: AssetKey, target: date) -> PricePoint | None:
        result: PricePoint | None = None
        if isinstance(asset, EquityAsset) and self.equity_router is not None:
            result = self.equity_router.fetch_close(asset, key, target)
        elif isinstance(asset, CryptoAsset) and self.crypto_router is not None:
            result = self.crypto_router.fetch_close(asset, key, target)

        if result is None and self.provider is not None:
            result = first_available(
                [self.provider],
                lambda provider: provider.fetch_price(asset, key, target),
                what=f"close for {key} on {target.isoformat()}",
            )
        return result

    def _fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        if isinstance(asset, EquityAsset) and self.equity_router is not None:
            return self.equity_router.fetch_quote(asset, key)
        if isinstance(asset, CryptoAsset) and self.crypto_router is not None:
            return self.crypto_router.fetch_quote(asset, key)
        return None

    def _fetch_fx(self, base: str, quote: str, target: date) -> FxRatePoint | None:
        if self.fx_router is not None:
            result = self.fx_router.fetch_close(base, quote, target)
            if result is not None:
                return result
        if self.provider is not None:
            return first_available(
                [self.provider],
                lambda provider: provider.fetch_fx_rate(base, quote, target),
                what=f"{base}->{quote} rate on {target.isoformat()}",
            )
        return None

    def _price_not_found(self, asset: Asset, query_date: date) -> MarketDataNotFoundError:
        key = asset_key(asset)
        return MarketDataNotFoundError(
            f"No close price found for asset {key} on or before {query_date.isoformat()} "
            f"(fetch lookback {self.config.fetch_lookback_days} days)",
            subject=key,
            as_of_date=query_date,
        )

    def _fx_not_found(self, base: str, quote: str, query_date: date) -> MarketDataNotFoundError:
        return MarketDataNotFoundError(
            f"No close FX rate found for {base}->{quote} on or before {query_date.isoformat()} "
            f"(fetch lookback {self.config.fetch_lookback_days} days)",
            subject=f"{base}->{quote}",
            as_of_date=query_date,
        )


__all__ = [
    "FxLookup",
    "MarketDataConfig",
    "MarketDataNotFoundError",
    "MarketDataService",
    "PriceLookup",
]
