from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date
from decimal import Decimal
from typing import Any, Sequence

from config import AppSettings, config
from db.db import init_engine, init_session_factory
from db.repositories import SqlMarketDataStore
from domain.asset import Asset, crypto, currency, equity
from domain.clock import Clock, SystemClock
from domain.market_data import parse_date
from services.price_service import MarketDataNotFoundError, MarketDataService
from services.price_source_registry import PriceSourceRegistry
from services.price_store import JsonlMarketDataStore, MalformedRecordError, MarketDataStore
from services.valuation import ValuationConverter

logger = logging.getLogger(__name__)


def build_store(settings: AppSettings) -> MarketDataStore:
    if settings.store_backend == "sql":
        engine = init_engine(settings.data_dir / "market_data.sqlite3")
        return SqlMarketDataStore(init_session_factory(engine))
    return JsonlMarketDataStore(root_dir=settings.data_dir / "market_data")


def build_market_data_service(settings: AppSettings, *, clock: Clock | None = None) -> MarketDataService:
    clock = clock or SystemClock()
    registry = PriceSourceRegistry(settings.data_dir, settings=settings)
    loaded = registry.load()
    logger.debug("Loaded price sources: %s", ", ".join(source.name for source in loaded) or "none")
    equity_router, crypto_router, fx_router = registry.build_routers(clock)
    return MarketDataService(
        build_store(settings),
        config=settings.market_data_config(),
        clock=clock,
        equity_router=equity_router,
        crypto_router=crypto_router,
        fx_router=fx_router,
    )


def _parse_asset(args: argparse.Namespace) -> Asset:
    if args.asset_type == "equity":
        return equity(args.symbol, args.exchange)
    if args.asset_type == "crypto":
        return crypto(args.symbol, args.network)
    return currency(args.symbol)


def _add_asset_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("asset_type", choices=("currency", "equity", "crypto"))
    parser.add_argument("symbol", help="ISO code, ticker or crypto symbol")
    parser.add_argument("--exchange", default=None, help="listing exchange for equities")
    parser.add_argument("--network", default=None, help="chain for crypto tokens")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="networth", description="Cached price and FX lookups and valuations.")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    price = subparsers.add_parser("price", help="close or latest price of an asset")
    _add_asset_arguments(price)
    price.add_argument("--date", type=parse_date, default=None, help="YYYY-MM-DD, defaults to today")
    price.add_argument("--latest", action="store_true", help="prefer a live quote over the close")
    price.add_argument("--force", action="store_true", help="consult external sources before the store")

    fx = subparsers.add_parser("fx", help="close FX rate between two currencies")
    fx.add_argument("base")
    fx.add_argument("quote")
    fx.add_argument("--date", type=parse_date, default=None)
    fx.add_argument("--force", action="store_true")

    value = subparsers.add_parser("value", help="value an amount from stored market data only")
    _add_asset_arguments(value)
    value.add_argument("amount", type=Decimal)
    value.add_argument("--currency", default=None, help="reporting currency")
    value.add_argument("--date", type=parse_date, default=None)
    value.add_argument("--places", type=int, default=None, help="round to this many decimal places")

    return parser


def run(args: argparse.Namespace, settings: AppSettings, service: MarketDataService) -> dict[str, Any]:
    as_of_date: date = args.date or service.clock.today()

    if args.command == "price":
        asset = _parse_asset(args)
        service.register_asset(asset)
        if args.latest:
            lookup = (
                service.price_latest_force(asset, as_of_date)
                if args.force
                else service.price_latest_with_status(asset, as_of_date)
            )
            return {"price": lookup.point.model_dump(mode="json"), "fetched": lookup.fetched}
        if args.force:
            lookup = service.price_close_force(asset, as_of_date)
            return {"price": lookup.point.model_dump(mode="json"), "fetched": lookup.fetched}
        return {"price": service.price_close(asset, as_of_date).model_dump(mode="json")}

    if args.command == "fx":
        if args.force:
            fx_lookup = service.fx_close_force(args.base, args.quote, as_of_date)
            return {"fx": fx_lookup.point.model_dump(mode="json"), "fetched": fx_lookup.fetched}
        return {"fx": service.fx_close(args.base, args.quote, as_of_date).model_dump(mode="json")}

    asset = _parse_asset(args)
    target_currency = args.currency or settings.reporting_currency
    valuation = ValuationConverter(service).value_in_reporting_currency(
        asset, args.amount, target_currency, as_of_date, decimal_places=args.places
    )
    return {
        "value": valuation.value,
        "currency": target_currency.upper(),
        "missing": valuation.missing,
        "as_of_date": as_of_date.isoformat(),
    }


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )

    settings = config()
    service = build_market_data_service(settings)
    try:
        result = run(args, settings, service)
    except MarketDataNotFoundError as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        return 1
    except MalformedRecordError as exc:
        logger.error("Market data store is corrupt: %s", exc)
        return 2

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
