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

logger = logging.getLogger(__name__)

_US_EXCHANGES = frozenset({"US", "XNAS", "NASDAQ", "NAS", "XNYS", "NYSE", "NYS", "XASE", "AMEX", "ASE", "ARCX", "ARCA"})

# exchange alias -> (Marketstack MIC suffix, trading currency)
_EXCHANGES: dict[str, tuple[str, str]] = {
    "XLON": ("XLON", "GBP"),
    "LSE": ("XLON", "GBP"),
    "LON": ("XLON", "GBP"),
    "XPAR": ("XPAR", "EUR"),
    "PAR": ("XPAR", "EUR"),
    "XFRA": ("XFRA", "EUR"),
    "FRA": ("XFRA", "EUR"),
    "XTSE": ("XTSE", "CAD"),
    "TSX": ("XTSE", "CAD"),
    "XASX": ("XASX", "AUD"),
    "ASX": ("XASX", "AUD"),
    "XHKG": ("XHKG", "HKD"),
    "HKG": ("XHKG", "HKD"),
    "HKEX": ("XHKG", "HKD"),
    "XTKS": ("XTKS", "JPY"),
    "TYO": ("XTKS", "JPY"),
}


def marketstack_listing(ticker: str, exchange: str | None) -> tuple[str, str]:
    """Marketstack symbol and trading currency; US listings carry no suffix."""
    ticker = ticker.strip().upper()
    code = (exchange or "").strip().upper()
    if not code or code in _US_EXCHANGES:
        return ticker, "USD"
    if code in _EXCHANGES:
        mic, currency = _EXCHANGES[code]
        return f"{ticker}.{mic}", currency
    if code.startswith("X"):
        return f"{ticker}.{code}", "USD"
    return ticker, "USD"


class MarketstackAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class _MarketstackClient:
    def __init__(
        self,
        base_url: str = "http://api.marketstack.com/v1",
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
        api_key = self.api_key or config().marketstack_api_key
        if not api_key:
            raise MarketstackAPIError("Marketstack access key is not configured")

        url = f"{self.base_url}/eod"
        params = {
            "access_key": api_key,
            "symbols": symbol,
            "date_from": start.isoformat(),
            "date_to": end.isoformat(),
        }
        try:
            response = self._session.request("GET", url, params=params, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            payload = getattr(resp, "text", None)
            raise MarketstackAPIError("Marketstack request failed", status_code=status_code, payload=payload) from exc
        except requests.RequestException as exc:
            raise MarketstackAPIError("Marketstack request failed") from exc

        try:
            payload_raw = response.json()
        except ValueError as exc:
            raise MarketstackAPIError("Marketstack returned invalid JSON", payload=response.text) from exc

        data = payload_raw.get("data") if isinstance(payload_raw, dict) else None
        if not isinstance(data, list):
            raise MarketstackAPIError("Marketstack returned unexpected payload type", payload=payload_raw)
        return data


class MarketstackSource(EquityPriceSource):
    """End-of-day closes only; quotes always come back empty."""

    def __init__(
        self,
        *,
        client: _MarketstackClient | None = None,
        clock: Clock | None = None,
        name: str = "marketstack",
    ) -> None:
        self.client = client or _MarketstackClient()
        self.clock = clock or SystemClock()
        self.name = name

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        if not isinstance(asset, EquityAsset):
            return None

        symbol, currency = marketstack_listing(asset.ticker, asset.exchange)
        bars = self.client.get_eod(symbol=symbol, start=as_of_date, end=as_of_date)
        if bars is None:
            logger.debug("Marketstack does not know %s", symbol)
            return None

        # Bar dates look like 2024-01-12T00:00:00+0000.
        wanted = as_of_date.isoformat()
        bar = next((entry for entry in bars if str(entry.get("date", ""))[:10] == wanted), None)
        if bar is None or bar.get("close") is None:
            return None

        return PricePoint(
            asset_key=key,
            as_of_date=as_of_date,
            timestamp=self.clock.now(),
            price=Decimal(str(bar["close"])),
            quote_currency=currency,
            kind=PriceKind.CLOSE,
            source=self.name,
        )

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        return None


__all__ = ["MarketstackAPIError", "MarketstackSource", "marketstack_listing"]
