from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import date, timezone

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from db import models
from domain.asset import Asset
from domain.market_data import (
    AssetKey,
    AssetRegistryEntry,
    FxRateKind,
    FxRatePoint,
    PriceKind,
    PricePoint,
)
from services.price_store import MalformedRecordError, MarketDataStore

_ASSET_ADAPTER: TypeAdapter[Asset] = TypeAdapter(Asset)


class SqlMarketDataStore(MarketDataStore):
    """Append-only market data tables; reads follow the JSONL store semantics."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_price(self, key: AssetKey, as_of_date: date, kind: PriceKind) -> PricePoint | None:
        stmt = (
            select(models.PricePointOrm)
            .where(
                models.PricePointOrm.asset_key == key,
                models.PricePointOrm.as_of_date == as_of_date,
                models.PricePointOrm.kind == kind.value,
            )
            .order_by(models.PricePointOrm.timestamp.desc(), models.PricePointOrm.id.asc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            return self._price_to_domain(row) if row is not None else None

    def get_all_prices(self, key: AssetKey) -> list[PricePoint]:
        stmt = (
            select(models.PricePointOrm)
            .where(models.PricePointOrm.asset_key == key)
            .order_by(models.PricePointOrm.id.asc())
        )
        with self._session_factory() as session:
            return [self._price_to_domain(row) for row in session.scalars(stmt)]

    def put_prices(self, points: Iterable[PricePoint]) -> None:
        rows = [
            models.PricePointOrm(
                asset_key=point.asset_key,
                as_of_date=point.as_of_date,
                timestamp=point.timestamp,
                price=point.price,
                quote_currency=point.quote_currency,
                kind=point.kind.value,
                source=point.source,
            )
            for point in points
        ]
        self._add_all(rows)

    def get_fx_rate(self, base: str, quote: str, as_of_date: date, kind: FxRateKind) -> FxRatePoint | None:
        stmt = (
            select(models.FxRatePointOrm)
            .where(
                models.FxRatePointOrm.base == base.strip().upper(),
                models.FxRatePointOrm.quote == quote.strip().upper(),
                models.FxRatePointOrm.as_of_date == as_of_date,
                models.FxRatePointOrm.kind == kind.value,
            )
            .order_by(models.FxRatePointOrm.timestamp.desc(), models.FxRatePointOrm.id.asc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            return self._fx_to_domain(row) if row is not None else None

    def get_all_fx_rates(self, base: str, quote: str) -> list[FxRatePoint]:
        stmt = (
            select(models.FxRatePointOrm)
            .where(
                models.FxRatePointOrm.base == base.strip().upper(),
                models.FxRatePointOrm.quote == quote.strip().upper(),
            )
            .order_by(models.FxRatePointOrm.id.asc())
        )
        with self._session_factory() as session:
            return [self._fx_to_domain(row) for row in session.scalars(stmt)]

    def put_fx_rates(self, points: Iterable[FxRatePoint]) -> None:
        rows = [
            models.FxRatePointOrm(
                base=point.base,
                quote=point.quote,
                as_of_date=point.as_of_date,
                timestamp=point.timestamp,
                rate=point.rate,
                kind=point.kind.value,
                source=point.source,
            )
            for point in points
        ]
        self._add_all(rows)

    def get_asset_entry(self, key: AssetKey) -> AssetRegistryEntry | None:
        stmt = (
            select(models.AssetRegistryEntryOrm)
            .where(models.AssetRegistryEntryOrm.asset_key == key)
            .order_by(models.AssetRegistryEntryOrm.id.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            return self._entry_to_domain(row) if row is not None else None

    def upsert_asset_entry(self, entry: AssetRegistryEntry) -> None:
        row = models.AssetRegistryEntryOrm(
            asset_key=entry.id,
            asset_json=_ASSET_ADAPTER.dump_json(entry.asset, exclude_none=True).decode("utf-8"),
            provider_ids_json=json.dumps(entry.provider_ids, sort_keys=True),
            tz=entry.tz,
        )
        self._add_all([row])

    def _add_all(self, rows: list[models.Base]) -> None:
        if not rows:
            return
        with self._session_factory() as session:
            session.add_all(rows)
            session.commit()

    @staticmethod
    def _price_to_domain(row: models.PricePointOrm) -> PricePoint:
        timestamp = row.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        try:
            return PricePoint(
                asset_key=AssetKey(row.asset_key),
                as_of_date=row.as_of_date,
                timestamp=timestamp,
                price=row.price,
                quote_currency=row.quote_currency,
                kind=PriceKind(row.kind),
                source=row.source,
            )
        except (ValueError, ValidationError) as exc:
            raise MalformedRecordError(f"Malformed price_points row id={row.id}") from exc

    @staticmethod
    def _fx_to_domain(row: models.FxRatePointOrm) -> FxRatePoint:
        timestamp = row.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        try:
            return FxRatePoint(
                base=row.base,
                quote=row.quote,
                as_of_date=row.as_of_date,
                timestamp=timestamp,
                rate=row.rate,
                kind=FxRateKind(row.kind),
                source=row.source,
            )
        except (ValueError, ValidationError) as exc:
            raise MalformedRecordError(f"Malformed fx_rate_points row id={row.id}") from exc

    @staticmethod
    def _entry_to_domain(row: models.AssetRegistryEntryOrm) -> AssetRegistryEntry:
        try:
            return AssetRegistryEntry(
                id=AssetKey(row.asset_key),
                asset=_ASSET_ADAPTER.validate_json(row.asset_json),
                provider_ids=json.loads(row.provider_ids_json),
                tz=row.tz,
            )
        except (ValueError, ValidationError) as exc:
            raise MalformedRecordError(f"Malformed asset_registry row id={row.id}") from exc


__all__ = ["SqlMarketDataStore"]
