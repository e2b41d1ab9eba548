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

# API docs: https://twelvedata.com/docs
logger = logging.getLogger(__name__)


def twelve_data_symbol(ticker: str, exchange: str | None) -> str:
    ticker = ticker.strip().upper()
    if exchange is None or not exchange.strip():
        return ticker
    return f"{ticker}:{exchange.strip().upper()}"


class TwelveDataAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class _TwelveDataClient:
    def __init__(
        self,
        base_url: str = "https://api.twelvedata.com",
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

    def get_time_series(self, *, symbol: str, start: date, end: date) -> dict[str, Any] | None:
        """Daily bars, newest first; None when Twelve Data has no data for the query."""
        params = {
            "symbol": symbol,
            "interval": "1day",
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
        }
        return self._request("/time_series", params=params)

    def get_quote(self, *, symbol: str) -> dict[str, Any] | None:
        return self._request("/quote", params={"symbol": symbol})

    def _request(self, path: str, *, params: dict[str, Any]) -> dict[str, Any] | None:
        api_key = self.api_key or config().twelve_data_api_key
        if not api_key:
            raise TwelveDataAPIError("Twelve Data api key is not configured")

        url = f"{self.base_url}{path}"
        try:
            response = self._session.request("GET", url, params={**params, "apikey": api_key}, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            payload = getattr(resp, "text", None)
            raise TwelveDataAPIError("Twelve Data request failed", status_code=status_code, payload=payload) from exc
        except requests.RequestException as exc:
            raise TwelveDataAPIError("Twelve Data request failed") from exc

        try:
            payload_raw = response.json()
        except ValueError as exc:
            raise TwelveDataAPIError("Twelve Data returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload_raw, dict):
            raise TwelveDataAPIError("Twelve Data returned unexpected payload type", payload=payload_raw)

        # Errors arrive with HTTP 200 and a status field in the body.
        if payload_raw.get("status") == "error":
            code = payload_raw.get("code")
            message = str(payload_raw.get("message") or "Twelve Data request failed")
            if code == 400 or "No data" in message:
                return None
            raise TwelveDataAPIError(message, status_code=code, payload=payload_raw)
        return payload_raw


class TwelveDataSource(EquityPriceSource):
    def __init__(
        self,
        *,
        client: _TwelveDataClient | None = None,
        clock: Clock | None = None,
        name: str = "twelve_data",
    ) -> None:
        self.client = client or _TwelveDataClient()
        self.clock = clock or SystemClock()
        self.name = name

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        if not isinstance(asset, EquityAsset):
            return None

        symbol = twelve_data_symbol(asset.ticker, asset.exchange)
        payload = self.client.get_time_series(symbol=symbol, start=as_of_date, end=as_of_date)
        if payload is None:
            logger.debug("Twelve Data has no bars for %s on %s", symbol, as_of_date.isoformat())
            return None

        wanted = as_of_date.isoformat()
        values = payload.get("values") or []
        bar = next((entry for entry in values if str(entry.get("datetime", ""))[:10] == wanted), None)
        if bar is None or bar.get("close") is None:
            return None

        meta = payload.get("meta") or {}
        return PricePoint(
            asset_key=key,
            as_of_date=as_of_date,
            timestamp=self.clock.now(),
            price=Decimal(str(bar["close"])),
            quote_currency=str(meta.get("currency") or "USD"),
            kind=PriceKind.CLOSE,
            source=self.name,
        )

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        if not isinstance(asset, EquityAsset):
            return None

        payload = self.client.get_quote(symbol=twelve_data_symbol(asset.ticker, asset.exchange))
        if payload is None or payload.get("close") is None:
            return None

        now = self.clock.now()
        return PricePoint(
            asset_key=key,
            as_of_date=now.date(),
            timestamp=now,
            price=Decimal(str(payload["close"])),
            quote_currency=str(payload.get("currency") or "USD"),
            kind=PriceKind.QUOTE,
            source=self.name,
        )


__all__ = ["TwelveDataAPIError", "TwelveDataSource", "twelve_data_symbol"]
