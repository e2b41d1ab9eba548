from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util import Retry

from domain.asset import Asset, CryptoAsset
from domain.clock import Clock, SystemClock
from domain.market_data import AssetKey, PriceKind, PricePoint

from .price_sources import CryptoPriceSource

# API docs: https://docs.coingecko.com/v3.0.1/reference/introduction
logger = logging.getLogger(__name__)

COINGECKO_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDT": "tether",
    "USDC": "usd-coin",
    "BNB": "binancecoin",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "SOL": "solana",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "POL": "matic-network",
    "LTC": "litecoin",
    "SHIB": "shiba-inu",
    "TRX": "tron",
    "AVAX": "avalanche-2",
    "DAI": "dai",
    "LINK": "chainlink",
    "ATOM": "cosmos",
    "UNI": "uniswap",
    "ETC": "ethereum-classic",
    "XLM": "stellar",
    "BCH": "bitcoin-cash",
    "ALGO": "algorand",
    "FIL": "filecoin",
    "NEAR": "near",
    "APT": "aptos",
    "ARB": "arbitrum",
    "OP": "optimism",
    "AAVE": "aave",
    "MKR": "maker",
    "CRV": "curve-dao-token",
    "SNX": "havven",
    "COMP": "compound-governance-token",
    "GRT": "the-graph",
    "XMR": "monero",
    "ZEC": "zcash",
    "XTZ": "tezos",
    "KSM": "kusama",
    "ENS": "ethereum-name-service",
    "LDO": "lido-dao",
    "CRO": "crypto-com-chain",
    "WBTC": "wrapped-bitcoin",
    "WETH": "weth",
    "STETH": "staked-ether",
}


class CoinGeckoAPIError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class _CoinGeckoClient:
    def __init__(
        self,
        base_url: str = "https://api.coingecko.com/api/v3",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        retry_attempts: int = 0,
        retry_backoff_seconds: float = 2,
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

    def get_history(self, *, coin_id: str, target_date: date) -> dict[str, Any]:
        params = {"date": target_date.strftime("%d-%m-%Y"), "localization": "false"}
        return self._request(f"/coins/{coin_id}/history", params=params)

    def get_simple_price(self, *, coin_id: str, vs_currency: str) -> dict[str, Any]:
        params = {"ids": coin_id, "vs_currencies": vs_currency, "include_last_updated_at": "true"}
        return self._request("/simple/price", params=params)

    def _request(self, path: str, *, params: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                "GET", url, params=params, timeout=self.timeout, headers={"Accept": "application/json"}
            )
            response.raise_for_status()
        except requests.HTTPError as exc:
            resp = exc.response
            status_code = getattr(resp, "status_code", None)
            payload = getattr(resp, "text", None)
            raise CoinGeckoAPIError("CoinGecko request failed", status_code=status_code, payload=payload) from exc
        except requests.RequestException as exc:
            raise CoinGeckoAPIError("CoinGecko request failed") from exc

        try:
            payload_raw = response.json()
        except ValueError as exc:
            raise CoinGeckoAPIError("CoinGecko returned invalid JSON", payload=response.text) from exc

        if not isinstance(payload_raw, dict):
            raise CoinGeckoAPIError("CoinGecko returned unexpected payload type", payload=payload_raw)
        return payload_raw


class CoinGeckoSource(CryptoPriceSource):
    def __init__(
        self,
        *,
        quote_currency: str = "USD",
        ids: dict[str, str] | None = None,
        client: _CoinGeckoClient | None = None,
        clock: Clock | None = None,
        name: str = "coingecko",
    ) -> None:
        self.quote_currency = quote_currency.strip().upper()
        self.ids = {symbol.upper(): coin_id for symbol, coin_id in (ids or {}).items()}
        self.client = client or _CoinGeckoClient()
        self.clock = clock or SystemClock()
        self.name = name

    def coin_id(self, symbol: str) -> str:
        """Configured ids win over the built-in table; unknown symbols are tried lower-cased."""
        symbol_upper = symbol.strip().upper()
        return self.ids.get(symbol_upper) or COINGECKO_IDS.get(symbol_upper) or symbol_upper.lower()

    def fetch_close(self, asset: Asset, key: AssetKey, as_of_date: date) -> PricePoint | None:
        if not isinstance(asset, CryptoAsset):
            return None

        history = self.client.get_history(coin_id=self.coin_id(asset.symbol), target_date=as_of_date)
        market_data = history.get("market_data")
        if not isinstance(market_data, dict):
            return None
        price = (market_data.get("current_price") or {}).get(self.quote_currency.lower())
        if price is None:
            return None

        return PricePoint(
            asset_key=key,
            as_of_date=as_of_date,
            timestamp=self.clock.now(),
            price=Decimal(str(price)),
            quote_currency=self.quote_currency,
            kind=PriceKind.CLOSE,
            source=self.name,
        )

    def fetch_quote(self, asset: Asset, key: AssetKey) -> PricePoint | None:
        if not isinstance(asset, CryptoAsset):
            return None

        coin_id = self.coin_id(asset.symbol)
        vs_currency = self.quote_currency.lower()
        payload = self.client.get_simple_price(coin_id=coin_id, vs_currency=vs_currency)
        price = (payload.get(coin_id) or {}).get(vs_currency)
        if price is None:
            logger.debug("CoinGecko has no %s quote for %s", vs_currency, coin_id)
            return None

        now = self.clock.now()
        return PricePoint(
            asset_key=key,
            as_of_date=now.date(),
            timestamp=now,
            price=Decimal(str(price)),
            quote_currency=self.quote_currency,
            kind=PriceKind.QUOTE,
            source=self.name,
        )


__all__ = ["COINGECKO_IDS", "CoinGeckoAPIError", "CoinGeckoSource"]
