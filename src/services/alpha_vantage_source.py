from __future__ import annotations

import logging
from datetime import date
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

# API docs: https://www.alphavantage.co/documentation/
logger = logging.getLogger(__name__)

_US_EXCHANGES = frozenset({"US", "NYSE", "XNYS", "NASDAQ", "XNAS", "AMEX", "XASE", "ARCX", "ARCA"})

# exchange alias -> (Alpha Vantage suffix, trading currency)
_EXCHANGES: dict[str, tuple[str, str]] = {
    "XETR": (".DEX", "EUR"),
    "XETRA": (".DEX", "EUR"),
    "XFRA": (".DEX", "EUR"),
    "FRA": (".DEX", "EUR"),
    "XLON": (".LON", "GBP"),
    "LSE": (".LON", "GBP"),
    "XTSE": (".TRT", "CAD"),
    "TSX": (".TRT", "CAD"),
    "XTKS": (".TYO", "JPY"),
    "TSE": (".TYO", "JPY"),
    "XASX": (".AX", "AUD"),
    "ASX": (".AX", "AUD"),
    "XPAR": (".PAR", "EUR"),
}


def alpha_vantage_listing(ticker: str, exchange: str | None) -> tuple[str, str]:
    """Alpha Vantage symbol and trading currency; unknown exchanges are passed through as a suffix."""
    ticker = ticker.strip().upper()
    if exchange is None or not exchange.strip():
        return ticker, "USD"
    code = exchange.strip().upper()
    if code in _US_EXCHANGES:
        return ticker, "USD"
    if code in _EXCHANGES:
        suffix, currency = _EXCHANGES[code]
        return f"{ticker}{suffix}", currency
    return f"{ticker}.{code}", "USD"


class AlphaVantageAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class _AlphaVantageClient:
    def __init__(
        self,
        base_url: str = "https://www.alphavantage.co",
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

    def get_daily(self, *, symbol: str) -> dict[str, dict[str, Any]] | None:
        """Last ~100 daily bars keyed by ``YYYY-MM-DD``."""
        payload = self._request({"function": "TIME_SERIES_DAILY", "symbol": symbol, "outputsize": "compact"})
        if payload is None:
            return None
        series = payload.get("Time Series (Daily)")
        return series if isinstance(series, dict) else None

    def get_global_quote(self, *, symbol: str) -> dict[str, Any] | None:
        payload = self._request({"function": "GLOBAL_QUOTE", "symbol": symbol})
        if payload is None:
            return None
        quote = payload.get("Global Quote")
        return quote if isinstance(quote, dict) and quote else None

    def _request(self, params: dict[str, Any]) -> dict[str, Any] | None:
        api_key = self.api_key or config().alpha_vantage_api_key
        if not api_key:
            raise AlphaVantageAPIError("Alpha Vantage api key is not configured")

        url = f"{self.base_url}/query"
        try:
            response = self._session.request("GET", url, params={**params, "apikey": api_key}, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            payload = getattr(resp, "text", None)
            message = "Alpha Vantage request failed"
            raise AlphaVantageAPIError(message, status_code=status_code, payload=payload) from exc
        except requests.RequestException as exc:
            raise AlphaVantageAPIError("Alpha Vantage request failed") from exc

        try:
            payload_raw = response.json()
        except ValueError as exc:
            raise AlphaVantageAPIError("Alpha Vantage returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload_raw, dict):
            raise AlphaVantageAPIError("Alpha Vantage returned unexpected payload type", payload=payload_raw)

        # Errors and rate limits arrive with HTTP 200.
        if payload_raw.get("Error Message"):
            raise AlphaVantageAPIError(str(payload_raw["Error Message"]), payload=payload_raw)
        if payload_raw.get("Note"):
            raise AlphaVantageAPIError(f"Alpha Vantage rate limit: {payload_raw['Note']}", payload=payload_raw)
        if payload_raw.get("Information"):
            logger.debug("Alpha Vantage information response: %s", payload_raw["Information"])
            return None
        return payload_raw


class AlphaVantageSource(EquityPriceSource):
    def __init__(
        self,
        *,
        client: _AlphaVantageClient | None = None,
        clock: Clock | None = None,
        name: str = "alpha_vantage",
    ) -> None:
        self.client = client or _AlphaVantageClient()
        self.clock = clock or SystemClock()
        self.name = name

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        if not isinstance(asset, EquityAsset):
            return None

        symbol, currency = alpha_vantage_listing(asset.ticker, asset.exchange)
        series = self.client.get_daily(symbol=symbol)
        bar = (series or {}).get(as_of_date.isoformat())
        if bar is None or bar.get("4. close") is None:
            return None

        return PricePoint(
            asset_key=key,
            as_of_date=as_of_date,
            timestamp=self.clock.now(),
            price=Decimal(str(bar["4. close"])),
            quote_currency=currency,
            kind=PriceKind.CLOSE,
            source=self.name,
        )

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        if not isinstance(asset, EquityAsset):
            return None

        symbol, currency = alpha_vantage_listing(asset.ticker, asset.exchange)
        quote = self.client.get_global_quote(symbol=symbol)
        if quote is None or quote.get("05. price") is None:
            return None

        now = self.clock.now()
        return PricePoint(
            asset_key=key,
            as_of_date=now.date(),
            timestamp=now,
            price=Decimal(str(quote["05. price"])),
            quote_currency=currency,
            kind=PriceKind.QUOTE,
            source=self.name,
        )


__all__ = ["AlphaVantageAPIError", "AlphaVantageSource", "alpha_vantage_listing"]
