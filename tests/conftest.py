from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base
from domain.clock import FixedClock
from services.price_store import JsonlMarketDataStore, MemoryMarketDataStore

engine: Engine = create_engine(
    "sqlite:///:memory:", connect_args={"check_same_thread": False}, poolclass=StaticPool
)
session_factory = sessionmaker(engine, expire_on_commit=False)

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def test_session_factory() -> Generator[sessionmaker[Session], None, None]:
    Base.metadata.create_all(engine)
    yield session_factory
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture(scope="function")
def memory_store() -> MemoryMarketDataStore:
    return MemoryMarketDataStore()


@pytest.fixture(scope="function")
def jsonl_store(tmp_path: Path) -> JsonlMarketDataStore:
    return JsonlMarketDataStore(root_dir=tmp_path / "market_data")
