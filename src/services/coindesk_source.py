from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from config import config
from domain.asset import Asset, CryptoAsset
from domain.clock import Clock, SystemClock
from domain.market_data import AssetKey, PriceKind, PricePoint

from .price_sources import CryptoPriceSource

logger = logging.getLogger(__name__)


class CoinDeskAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


@dataclass(frozen=True)
class SpotInstrumentOHLC:
    timestamp: datetime
    market: str
    instrument: str
    base_asset: str | None
    quote_asset: str | None
    open: Decimal | None
    high: Decimal | None
    low: Decimal | None
    close: Decimal


class _CoinDeskClient:
    def __init__(
        self,
        base_url: str = "https://data-api.coindesk.com",
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

        retry = Retry(
            total=retry_attempts,
            backoff_factor=retry_backoff_seconds,
            status_forcelist={429},
            allowed_methods={"GET"},
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def get_spot_historical_days(
        self, *, market: str, instrument: str, to_ts: int, limit: int = 1
    ) -> list[SpotInstrumentOHLC]:
        return self._get_spot_historical(
            path="/spot/v1/historical/days", market=market, instrument=instrument, to_ts=to_ts, limit=limit
        )

    def get_spot_historical_minutes(
        self, *, market: str, instrument: str, to_ts: int, limit: int = 1
    ) -> list[SpotInstrumentOHLC]:
        return self._get_spot_historical(
            path="/spot/v1/historical/minutes", market=market, instrument=instrument, to_ts=to_ts, limit=limit
        )

    def _get_spot_historical(
        self,
        *,
        path: str,
        market: str,
        instrument: str,
        to_ts: int,
        limit: int,
    ) -> list[SpotInstrumentOHLC]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        if not market:
            raise ValueError("market must be provided")
        if not instrument:
            raise ValueError("instrument must be provided")

        params = {
            "market": market,
            "instrument": instrument,
            "limit": limit,
            "fill": "false",
            "response_format": "JSON",
            "to_ts": to_ts,
        }
        payload = self._request("GET", path, params=params)
        entries = payload.get("Data") or []
        return [self._parse_histo_entry(entry) for entry in entries]

    def _request(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        api_key = self.api_key or config().coindesk_api_key
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        try:
            response = self._session.request(method, url, params=params, timeout=self.timeout, headers=headers)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            message, payload_err = self._extract_error(resp)
            raise CoinDeskAPIError(message, status_code=resp.status_code, payload=payload_err) from exc
        except requests.RequestException as exc:
            status_code = getattr(getattr(exc, "response", None), "status_code", None)
            raise CoinDeskAPIError("CoinDesk API request failed", status_code=status_code) from exc

        try:
            payload: dict[str, Any] = response.json()
        except ValueError as exc:
            raise CoinDeskAPIError("CoinDesk API returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload, dict):
            raise CoinDeskAPIError("CoinDesk API returned unexpected payload type", payload=payload)

        err = payload.get("Err")
        if isinstance(err, dict) and err.get("message"):
            raise CoinDeskAPIError(err["message"], status_code=response.status_code, payload=payload)

        return payload

    def _parse_histo_entry(self, entry: dict[str, Any]) -> SpotInstrumentOHLC:
        ts_raw = entry.get("TIMESTAMP")
        close_raw = entry.get("CLOSE")
        if ts_raw is None or close_raw is None:
            raise CoinDeskAPIError("CoinDesk histo entry missing TIMESTAMP or CLOSE field", payload=entry)

        return SpotInstrumentOHLC(
            timestamp=datetime.fromtimestamp(int(ts_raw), tz=timezone.utc),
            market=str(entry.get("MARKET", "")),
            instrument=str(entry.get("INSTRUMENT", "")),
            base_asset=entry.get("BASE"),
            quote_asset=entry.get("QUOTE"),
            open=self._to_decimal(entry.get("OPEN")),
            high=self._to_decimal(entry.get("HIGH")),
            low=self._to_decimal(entry.get("LOW")),
            close=Decimal(str(close_raw)),
        )

    @staticmethod
    def _to_decimal(value: Any) -> Decimal | None:
        if value is None:
            return None
        return Decimal(str(value))

    @staticmethod
    def _extract_error(response: Response) -> tuple[str, Any]:
        message = "CoinDesk API request failed"
        try:
            payload = response.json()
            err = payload.get("Err") if isinstance(payload, dict) else None
            if isinstance(err, dict) and err.get("message"):
                message = err["message"]
        except ValueError:
            payload = response.text
        return message, payload


class CoinDeskSource(CryptoPriceSource):
    """Crypto closes from daily candles and quotes from the latest minute candle."""

    def __init__(
        self,
        *,
        market: str = "coinbase",
        quote_currency: str = "USD",
        client: _CoinDeskClient | None = None,
        clock: Clock | None = None,
        name: str = "coindesk",
    ) -> None:
        if not market:
            msg = "market must be provided"
            raise ValueError(msg)

        self.client = client or _CoinDeskClient()
        self.market = market
        self.quote_currency = quote_currency.strip().upper()
        self.clock = clock or SystemClock()
        self.name = name

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        if not isinstance(asset, CryptoAsset):
            return None

        day_end = datetime.combine(as_of_date, time.max, tzinfo=timezone.utc)
        entries = self.client.get_spot_historical_days(
            market=self.market, instrument=self._instrument(asset), to_ts=int(day_end.timestamp())
        )
        bucket = next((entry for entry in entries if entry.timestamp.date() == as_of_date), None)
        if bucket is None:
            return None

        return PricePoint(
            asset_key=key,
            as_of_date=as_of_date,
            timestamp=self.clock.now(),
            price=bucket.close,
            quote_currency=self.quote_currency,
            kind=PriceKind.CLOSE,
            source=self.name,
        )

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        if not isinstance(asset, CryptoAsset):
            return None

        now = self.clock.now()
        entries = self.client.get_spot_historical_minutes(
            market=self.market, instrument=self._instrument(asset), to_ts=int(now.timestamp())
        )
        if not entries:
            return None

        bucket = max(entries, key=lambda entry: entry.timestamp)
        logger.debug("CoinDesk quote for %s from candle at %s", key, bucket.timestamp.isoformat())
        return PricePoint(
            asset_key=key,
            as_of_date=now.date(),
            timestamp=now,
            price=bucket.close,
            quote_currency=self.quote_currency,
            kind=PriceKind.QUOTE,
            source=self.name,
        )

    def _instrument(self, asset: CryptoAsset) -> str:
        return f"{asset.symbol.upper()}-{self.quote_currency}"


__all__ = ["CoinDeskAPIError", "CoinDeskSource", "SpotInstrumentOHLC"]
