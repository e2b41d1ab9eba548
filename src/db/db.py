from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base


def init_engine(db_file: Path | None = None, *, echo: bool = False) -> Engine:
    url = f"sqlite:///{db_file}" if db_file is not None else "sqlite:///:memory:"
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)
    engine: Engine = create_engine(url, echo=echo)

    Base.metadata.create_all(engine)
    return engine


def init_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, expire_on_commit=False)
