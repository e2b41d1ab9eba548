from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator
from datetime import date
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from domain.market_data import (
    AssetKey,
    AssetRegistryEntry,
    FxRateKind,
    FxRatePoint,
    PriceKind,
    PricePoint,
    sanitize_segment,
)

logger = logging.getLogger(__name__)

_ModelT = TypeVar("_ModelT", bound=BaseModel)
_ObservationT = TypeVar("_ObservationT", PricePoint, FxRatePoint)

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


class MalformedRecordError(RuntimeError):
    def __init__(self, message: str, *, path: Path | None = None, line_number: int | None = None) -> None:
        super().__init__(message)
        self.path = path
        self.line_number = line_number


class MarketDataStore(Protocol):
    def get_price(self, key: AssetKey, as_of_date: date, kind: PriceKind) -> PricePoint | None: ...

    def get_all_prices(self, key: AssetKey) -> list[PricePoint]: ...

    def put_prices(self, points: Iterable[PricePoint]) -> None: ...

    def get_fx_rate(self, base: str, quote: str, as_of_date: date, kind: FxRateKind) -> FxRatePoint | None: ...

    def get_all_fx_rates(self, base: str, quote: str) -> list[FxRatePoint]: ...

    def put_fx_rates(self, points: Iterable[FxRatePoint]) -> None: ...

    def get_asset_entry(self, key: AssetKey) -> AssetRegistryEntry | None: ...

    def upsert_asset_entry(self, entry: AssetRegistryEntry) -> None: ...


def sanitize_code(value: str) -> str:
    """Currency code as used in an FX partition name."""
    return _NON_ALNUM.sub("_", value.strip()).upper()


def select_latest(points: Iterable[_ObservationT], as_of_date: date, kind: str) -> _ObservationT | None:
    """Latest-timestamp observation for an exact date and kind."""
    best: _ObservationT | None = None
    for point in points:
        if point.as_of_date != as_of_date or point.kind != kind:
            continue
        if best is None or point.timestamp > best.timestamp:
            best = point
    return best


class NullMarketDataStore(MarketDataStore):
    def get_price(self, key: AssetKey, as_of_date: date, kind: PriceKind) -> PricePoint | None:
        return None

    def get_all_prices(self, key: AssetKey) -> list[PricePoint]:
        return []

    def put_prices(self, points: Iterable[PricePoint]) -> None:
        return None

    def get_fx_rate(self, base: str, quote: str, as_of_date: date, kind: FxRateKind) -> FxRatePoint | None:
        return None

    def get_all_fx_rates(self, base: str, quote: str) -> list[FxRatePoint]:
        return []

    def put_fx_rates(self, points: Iterable[FxRatePoint]) -> None:
        return None

    def get_asset_entry(self, key: AssetKey) -> AssetRegistryEntry | None:
        return None

    def upsert_asset_entry(self, entry: AssetRegistryEntry) -> None:
        return None


class MemoryMarketDataStore(MarketDataStore):
    """In-process store; one observation per (key, date, kind), last write wins."""

    def __init__(self) -> None:
        self._prices: dict[tuple[AssetKey, date, PriceKind], PricePoint] = {}
        self._fx_rates: dict[tuple[str, str, date, FxRateKind], FxRatePoint] = {}
        self._assets: dict[AssetKey, AssetRegistryEntry] = {}

    def get_price(self, key: AssetKey, as_of_date: date, kind: PriceKind) -> PricePoint | None:
        return self._prices.get((key, as_of_date, kind))

    def get_all_prices(self, key: AssetKey) -> list[PricePoint]:
        return [point for (point_key, _, _), point in self._prices.items() if point_key == key]

    def put_prices(self, points: Iterable[PricePoint]) -> None:
        for point in points:
            self._prices[(point.asset_key, point.as_of_date, point.kind)] = point

    def get_fx_rate(self, base: str, quote: str, as_of_date: date, kind: FxRateKind) -> FxRatePoint | None:
        return self._fx_rates.get((base.strip().upper(), quote.strip().upper(), as_of_date, kind))

    def get_all_fx_rates(self, base: str, quote: str) -> list[FxRatePoint]:
        pair = (base.strip().upper(), quote.strip().upper())
        return [point for (b, q, _, _), point in self._fx_rates.items() if (b, q) == pair]

    def put_fx_rates(self, points: Iterable[FxRatePoint]) -> None:
        for point in points:
            self._fx_rates[(point.base, point.quote, point.as_of_date, point.kind)] = point

    def get_asset_entry(self, key: AssetKey) -> AssetRegistryEntry | None:
        return self._assets.get(key)

    def upsert_asset_entry(self, entry: AssetRegistryEntry) -> None:
        self._assets[entry.id] = entry


class JsonlMarketDataStore(MarketDataStore):
    """Append-only JSONL files under ``root_dir``.

    Layout::

        prices/<asset key>/<year>.jsonl
        fx/<BASE>-<QUOTE>/<year>.jsonl
        assets/index.jsonl
    """

    def __init__(self, *, root_dir: Path) -> None:
        self.root_dir = root_dir

    def get_price(self, key: AssetKey, as_of_date: date, kind: PriceKind) -> PricePoint | None:
        path = self._price_dir(key) / f"{as_of_date.year}.jsonl"
        return select_latest(self._read(path, PricePoint), as_of_date, kind)

    def get_all_prices(self, key: AssetKey) -> list[PricePoint]:
        return list(self._read_partition(self._price_dir(key), PricePoint))

    def put_prices(self, points: Iterable[PricePoint]) -> None:
        grouped: dict[Path, list[PricePoint]] = {}
        for point in points:
            path = self._price_dir(point.asset_key) / f"{point.as_of_date.year}.jsonl"
            grouped.setdefault(path, []).append(point)
        for path, items in grouped.items():
            self._append(path, items)

    def get_fx_rate(self, base: str, quote: str, as_of_date: date, kind: FxRateKind) -> FxRatePoint | None:
        path = self._fx_dir(base, quote) / f"{as_of_date.year}.jsonl"
        return select_latest(self._read(path, FxRatePoint), as_of_date, kind)

    def get_all_fx_rates(self, base: str, quote: str) -> list[FxRatePoint]:
        return list(self._read_partition(self._fx_dir(base, quote), FxRatePoint))

    def put_fx_rates(self, points: Iterable[FxRatePoint]) -> None:
        grouped: dict[Path, list[FxRatePoint]] = {}
        for point in points:
            path = self._fx_dir(point.base, point.quote) / f"{point.as_of_date.year}.jsonl"
            grouped.setdefault(path, []).append(point)
        for path, items in grouped.items():
            self._append(path, items)

    def get_asset_entry(self, key: AssetKey) -> AssetRegistryEntry | None:
        found: AssetRegistryEntry | None = None
        for entry in self._read(self._assets_index(), AssetRegistryEntry):
            if entry.id == key:
                found = entry
        return found

    def upsert_asset_entry(self, entry: AssetRegistryEntry) -> None:
        self._append(self._assets_index(), [entry])

    def _price_dir(self, key: AssetKey) -> Path:
        segments = [sanitize_segment(segment) for segment in key.split("/")]
        return self.root_dir.joinpath("prices", *segments)

    def _fx_dir(self, base: str, quote: str) -> Path:
        return self.root_dir / "fx" / f"{sanitize_code(base)}-{sanitize_code(quote)}"

    def _assets_index(self) -> Path:
        return self.root_dir / "assets" / "index.jsonl"

    def _read_partition(self, directory: Path, model: type[_ModelT]) -> Iterator[_ModelT]:
        if not directory.is_dir():
            return
        for path in sorted(directory.glob("*.jsonl")):
            yield from self._read(path, model)

    @staticmethod
    def _read(path: Path, model: type[_ModelT]) -> Iterator[_ModelT]:
        if not path.exists():
            return
        with path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield model.model_validate(json.loads(line))
                except (ValueError, ValidationError) as exc:
                    msg = f"Malformed {model.__name__} record in {path} at line {line_number}"
                    raise MalformedRecordError(msg, path=path, line_number=line_number) from exc

    @staticmethod
    def _append(path: Path, items: list[_ModelT]) -> None:
        if not items:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            for item in items:
                handle.write(item.model_dump_json(exclude_none=True))
                handle.write("\n")
        logger.debug("Appended %d record(s) to %s", len(items), path)


__all__ = [
    "JsonlMarketDataStore",
    "MalformedRecordError",
    "MarketDataStore",
    "MemoryMarketDataStore",
    "NullMarketDataStore",
    "sanitize_code",
    "select_latest",
]
