from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["LEDGER_TX_BACKOFF_MS"] = "0"

from opsdb.database import Base, build_engine, build_session_factory  # noqa: E402
from opsdb.apps.inventory import models as inventory_models  # noqa: E402, F401
from opsdb.apps.inventory.engine import InventoryEngine  # noqa: E402


@pytest.fixture()
def db_engine():
    db_engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=db_engine)
    try:
        yield db_engine
    finally:
        db_engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture()
def file_session_factory(tmp_path):
    """Session factory over a file database, so separate connections really compete."""
    file_engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=file_engine)
    try:
        yield build_session_factory(file_engine)
    finally:
        file_engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class TickingClock:
    """Deterministic clock: every call is one minute after the previous one."""

    def __init__(self, start: datetime, step: timedelta = timedelta(minutes=1)) -> None:
        self.current = start - step
        self.step = step

    def __call__(self) -> datetime:
        self.current += self.step
        return self.current


@pytest.fixture()
def clock():
    return TickingClock(datetime(2025, 8, 4, 9, 0, 0))


@pytest.fixture()
def published():
    return []


@pytest.fixture()
def engine(session_factory, published, clock):
    return InventoryEngine(session_factory, publisher=published.append, backoff_ms=0, clock=clock)
