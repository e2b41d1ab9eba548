from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, cast

import pytest
import requests

from domain.market_data import FxRateKind
from services.open_exchange_rates_source import (
    HistoricalRates,
    OpenExchangeRatesAPIError,
    OpenExchangeRatesSource,
    _OpenExchangeRatesClient,
)


class _StubResponse:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._payload = payload

    def raise_for_status(self) -> None:  # pragma: no cover - stub never raises
        return None

    def json(self) -> dict[str, Any]:
        return self._payload


class _StubSession:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._payload = payload
        self.last_request: dict[str, Any] | None = None

    def mount(self, prefix: str, adapter: object) -> None:
        return None

    def request(
        self, method: str, url: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> _StubResponse:
        self.last_request = {"method": method, "url": url, "params": params, "timeout": timeout}
        return _StubResponse(self._payload)


def test_client_parses_historical_payload() -> None:
    payload = {
        "timestamp": 1704153599,
        "base": "usd",
        "rates": {"USD": 1, "EUR": 0.9},
    }
    stub_session = _StubSession(payload=payload)
    session = cast(requests.Session, stub_session)
    client = _OpenExchangeRatesClient(app_id="test-app", base_url="https://example.com", session=session)

    snapshot = client.get_historical_rates(target_date=date(2024, 1, 1))

    assert snapshot.base == "USD"
    assert snapshot.rates["EUR"] == Decimal("0.9")
    assert stub_session.last_request == {
        "method": "GET",
        "url": "https://example.com/historical/2024-01-01.json",
        "params": {"app_id": "test-app"},
        "timeout": 10.0,
    }


def test_client_surfaces_api_error_payload() -> None:
    payload = {"error": True, "status": 401, "description": "Invalid App ID provided."}
    session = cast(requests.Session, _StubSession(payload=payload))
    client = _OpenExchangeRatesClient(app_id="bad", session=session)

    with pytest.raises(OpenExchangeRatesAPIError, match="Invalid App ID"):
        client.get_historical_rates(target_date=date(2024, 1, 1))


class _StubOXRClient:
    def __init__(self, snapshot: HistoricalRates) -> None:
        self.snapshot = snapshot
        self.requested_dates: list[date] = []

    def get_historical_rates(self, *, target_date: date) -> HistoricalRates:
        self.requested_dates.append(target_date)
        return self.snapshot


def _snapshot(rates: dict[str, str]) -> HistoricalRates:
    return HistoricalRates(
        date=date(2024, 1, 1),
        timestamp=datetime(2024, 1, 1, 23, 59, tzinfo=timezone.utc),
        base="USD",
        rates={code: Decimal(rate) for code, rate in rates.items()},
    )


def test_source_converts_cross_currency_pair() -> None:
    stub_client = _StubOXRClient(snapshot=_snapshot({"USD": "1", "EUR": "0.9", "GBP": "0.8"}))
    source = OpenExchangeRatesSource(client=cast(_OpenExchangeRatesClient, stub_client), name="oxr")

    point = source.fetch_close("eur", "gbp", date(2024, 1, 1))

    assert point is not None
    assert point.rate == Decimal("0.8") / Decimal("0.9")
    assert point.base == "EUR"
    assert point.quote == "GBP"
    assert point.kind == FxRateKind.CLOSE
    assert point.as_of_date == date(2024, 1, 1)
    assert point.timestamp == datetime(2024, 1, 1, 23, 59, tzinfo=timezone.utc)
    assert point.source == "oxr"
    assert stub_client.requested_dates == [date(2024, 1, 1)]


def test_source_inverts_rate_into_snapshot_base() -> None:
    stub_client = _StubOXRClient(snapshot=_snapshot({"EUR": "0.9"}))
    source = OpenExchangeRatesSource(client=cast(_OpenExchangeRatesClient, stub_client))

    point = source.fetch_close("EUR", "USD", date(2024, 1, 1))

    assert point is not None
    assert point.rate == Decimal("1") / Decimal("0.9")


def test_source_returns_none_for_missing_currency() -> None:
    stub_client = _StubOXRClient(snapshot=_snapshot({"USD": "1"}))
    source = OpenExchangeRatesSource(client=cast(_OpenExchangeRatesClient, stub_client))

    assert source.fetch_close("EUR", "USD", date(2024, 1, 1)) is None
