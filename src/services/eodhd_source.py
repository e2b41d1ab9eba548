from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from config import config
from domain.asset import Asset, EquityAsset
from domain.clock import Clock, SystemClock
from domain.market_data import AssetKey, PriceKind, PricePoint

from .price_sources import EquityPriceSource

# Exchange codes: https://eodhd.com/financial-apis/list-supported-exchanges/
logger = logging.getLogger(__name__)

# exchange alias -> (EODHD suffix, trading currency)
_EXCHANGES: dict[str, tuple[str, str]] = {}


def _register(suffix: str, currency: str, *aliases: str) -> None:
    for alias in aliases:
        _EXCHANGES[alias] = (suffix, currency)


_register("US", "USD", "US", "XNYS", "NYSE", "XNAS", "NASDAQ", "XASE", "AMEX", "ARCX", "ARCA", "NYSE ARCA", "BATS")
_register("LSE", "GBP", "XLON", "LSE", "LONDON")
_register("XETRA", "EUR", "XETR", "XETRA")
_register("F", "EUR", "XFRA", "FRA", "FRANKFURT")
_register("PA", "EUR", "XPAR", "PARIS", "EURONEXT PARIS")
_register("AS", "EUR", "XAMS", "AMSTERDAM", "EURONEXT AMSTERDAM")
_register("SW", "CHF", "XSWX", "SIX", "SWISS")
_register("TSE", "JPY", "XTKS", "TSE", "TOKYO")
_register("HK", "HKD", "XHKG", "HKEX", "HONG KONG")
_register("AU", "AUD", "XASX", "ASX", "AUSTRALIA")
_register("TO", "CAD", "XTSE", "TSX", "TORONTO")
_register("V", "CAD", "XTSX", "TSXV", "TSX VENTURE")
_register("SG", "SGD", "XSES", "SGX", "SINGAPORE")
_register("BSE", "INR", "XBOM", "BSE", "BOMBAY")
_register("NSE", "INR", "XNSE", "NSE", "NATIONAL STOCK EXCHANGE")

_DEFAULT_EXCHANGE = ("US", "USD")


def exchange_listing(exchange: str | None) -> tuple[str, str]:
    """EODHD suffix and quote currency for an exchange; unknown exchanges map to US/USD."""
    if exchange is None:
        return _DEFAULT_EXCHANGE
    return _EXCHANGES.get(exchange.strip().upper(), _DEFAULT_EXCHANGE)


def eodhd_symbol(ticker: str, exchange: str | None) -> str:
    suffix, _ = exchange_listing(exchange)
    return f"{ticker.strip().upper()}.{suffix}"


class EodhdAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class _EodhdClient:
    def __init__(
        self,
        base_url: str = "https://eodhd.com/api",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        api_key: str | None = None,
        retry_attempts: int = 0,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._session = session or requests.Session()

        retries = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist=[429],
            allowed_methods=frozenset({"GET"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retries)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_eod(self, *, symbol: str, start: date, end: date) -> list[dict[str, Any]] | None:
        """Daily bars between ``start`` and ``end``; None when EODHD does not know the symbol."""
        payload = self._request(f"/eod/{symbol}", params={"from": start.isoformat(), "to": end.isoformat()})
        if payload is None:
            return None
        if not isinstance(payload, list):
            raise EodhdAPIError("EODHD returned unexpected payload type", payload=payload)
        return payload

    def get_real_time(self, *, symbol: str) -> dict[str, Any] | None:
        payload = self._request(f"/real-time/{symbol}", params={})
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise EodhdAPIError("EODHD returned unexpected payload type", payload=payload)
        return payload

    def _request(self, path: str, *, params: dict[str, Any]) -> Any | None:
        api_key = self.api_key or config().eodhd_api_key
        if not api_key:
            raise EodhdAPIError("EODHD api key is not configured")

        url = f"{self.base_url}{path}"
        query = {**params, "api_token": api_key, "fmt": "json"}
        try:
            response = self._session.request("GET", url, params=query, timeout=self.timeout)
            # Unknown symbols and dates without data come back as 404.
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            payload = getattr(resp, "text", None)
            raise EodhdAPIError("EODHD request failed", status_code=status_code, payload=payload) from exc
        except requests.RequestException as exc:
            raise EodhdAPIError("EODHD request failed") from exc

        try:
            return response.json()
        except ValueError as exc:
            raise EodhdAPIError("EODHD returned invalid JSON", payload=response.text) from exc


def _to_decimal(value: Any) -> Decimal | None:
    # Real-time fields read "NA" outside trading data coverage.
    if value is None or value == "NA":
        return None
    return Decimal(str(value))


class EodhdSource(EquityPriceSource):
    def __init__(
        self,
        *,
        client: _EodhdClient | None = None,
        clock: Clock | None = None,
        name: str = "eodhd",
    ) -> None:
        self.client = client or _EodhdClient()
        self.clock = clock or SystemClock()
        self.name = name

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        if not isinstance(asset, EquityAsset):
            return None

        symbol = eodhd_symbol(asset.ticker, asset.exchange)
        bars = self.client.get_eod(symbol=symbol, start=as_of_date, end=as_of_date)
        if bars is None:
            logger.debug("EODHD does not know %s", symbol)
            return None

        wanted = as_of_date.isoformat()
        bar = next((entry for entry in bars if entry.get("date") == wanted), None)
        close = _to_decimal(bar.get("close")) if bar is not None else None
        if close is None:
            return None

        _, currency = exchange_listing(asset.exchange)
        return PricePoint(
            asset_key=key,
            as_of_date=as_of_date,
            timestamp=self.clock.now(),
            price=close,
            quote_currency=currency,
            kind=PriceKind.CLOSE,
            source=self.name,
        )

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        if not isinstance(asset, EquityAsset):
            return None

        symbol = eodhd_symbol(asset.ticker, asset.exchange)
        payload = self.client.get_real_time(symbol=symbol)
        if payload is None:
            return None

        price = _to_decimal(payload.get("close"))
        if price is None:
            return None

        # Quotes are stamped with the fetch instant; the last trade time only goes to the log.
        ts_raw = payload.get("timestamp")
        if ts_raw not in (None, "NA"):
            last_trade = datetime.fromtimestamp(int(ts_raw), tz=timezone.utc)
            logger.debug("EODHD last trade for %s at %s", symbol, last_trade.isoformat())

        now = self.clock.now()
        _, currency = exchange_listing(asset.exchange)
        return PricePoint(
            asset_key=key,
            as_of_date=now.date(),
            timestamp=now,
            price=price,
            quote_currency=currency,
            kind=PriceKind.QUOTE,
            source=self.name,
        )


__all__ = ["EodhdAPIError", "EodhdSource", "eodhd_symbol", "exchange_listing"]
