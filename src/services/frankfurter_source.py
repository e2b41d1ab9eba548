from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from domain.clock import Clock, SystemClock
from domain.market_data import FxRateKind, FxRatePoint

from .price_sources import FxRateSource

# ECB daily reference rates, EUR based. No API key required.
logger = logging.getLogger(__name__)

ECB_BASE = "EUR"


class FrankfurterAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class _FrankfurterClient:
    def __init__(
        self,
        base_url: str = "https://api.frankfurter.app",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 0,
        retry_backoff_seconds: float = 1,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
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

    def get_eur_rates(self, *, target_date: date, symbols: list[str]) -> tuple[date, dict[str, Decimal]]:
        """Rates for ``symbols`` per one EUR, with the date ECB published them for."""
        url = f"{self.base_url}/{target_date.isoformat()}"
        params = {"from": ECB_BASE, "to": ",".join(symbols)}
        try:
            response = self._session.request("GET", url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            raise FrankfurterAPIError("Frankfurter request failed", status_code=status_code) from exc
        except requests.RequestException as exc:
            raise FrankfurterAPIError("Frankfurter request failed") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise FrankfurterAPIError("Frankfurter returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("rates"), dict) or "date" not in payload:
            raise FrankfurterAPIError("Frankfurter payload missing required fields", payload=payload)

        published = date.fromisoformat(str(payload["date"]))
        rates = {str(code).upper(): Decimal(str(value)) for code, value in payload["rates"].items()}
        return published, rates


class FrankfurterSource(FxRateSource):
    def __init__(
        self,
        *,
        client: _FrankfurterClient | None = None,
        clock: Clock | None = None,
        name: str = "frankfurter",
    ) -> None:
        self.client = client or _FrankfurterClient()
        self.clock = clock or SystemClock()
        self.name = name

    def fetch_close(self, base: str, quote: str, as_of_date: date) -> FxRatePoint | None:
        base_code = base.strip().upper()
        quote_code = quote.strip().upper()
        if base_code == quote_code:
            rate: Decimal | None = Decimal("1")
        else:
            symbols = [code for code in (base_code, quote_code) if code != ECB_BASE]
            published, eur_rates = self.client.get_eur_rates(target_date=as_of_date, symbols=symbols)
            if published != as_of_date:
                # Weekends and holidays resolve to the previous publication.
                logger.debug("Frankfurter has no publication for %s (got %s)", as_of_date, published)
                return None
            rate = self._cross_rate(eur_rates, base_code, quote_code)

        if rate is None:
            return None

        return FxRatePoint(
            base=base_code,
            quote=quote_code,
            as_of_date=as_of_date,
            timestamp=self.clock.now(),
            rate=rate,
            kind=FxRateKind.CLOSE,
            source=self.name,
        )

    @staticmethod
    def _cross_rate(eur_rates: dict[str, Decimal], base: str, quote: str) -> Decimal | None:
        eur_to_base = Decimal("1") if base == ECB_BASE else eur_rates.get(base)
        eur_to_quote = Decimal("1") if quote == ECB_BASE else eur_rates.get(quote)
        if eur_to_base is None or eur_to_quote is None or eur_to_base == 0:
            return None
        return eur_to_quote / eur_to_base


__all__ = ["FrankfurterAPIError", "FrankfurterSource"]
