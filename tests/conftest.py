"""
Pytest configuration and shared fixtures.
"""

import pytest
from datetime import datetime
from typing import Callable, List

from jobstore.database import (
    Base,
    Job,
    create_storage_engine,
    sqlite_url,
)
from jobstore.logger import get_logger, reset_logger
from jobstore.storage import JobStorage


@pytest.fixture(autouse=True)
def quiet_logger():
    """Fresh, console-less global logger for every test."""
    reset_logger()
    get_logger(level="DEBUG", enable_console=False)
    yield
    reset_logger()


@pytest.fixture
def engine(tmp_path):
    """Engine on a temporary SQLite database with the schema created."""
    engine = create_storage_engine(sqlite_url(tmp_path / "jobstore.db"))
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def storage(engine) -> JobStorage:
    return JobStorage(engine)


@pytest.fixture
def seed(storage) -> Callable[..., None]:
    """Insert rows directly, bypassing the transaction engine."""
    def _seed(*rows: Base) -> None:
        with storage.get_session() as session:
            session.add_all(rows)
            session.commit()
    return _seed


@pytest.fixture
def fetch(storage) -> Callable[..., List[Base]]:
    """Read rows of a model in a fresh session, ordered by primary key."""
    def _fetch(model, **filters) -> List[Base]:
        with storage.get_session() as session:
            query = session.query(model).filter_by(**filters)
            return query.order_by(*model.__table__.primary_key.columns).all()
    return _fetch


@pytest.fixture
def jobs(seed) -> List[str]:
    """Three persisted jobs, returned as the string ids callers use."""
    seed(
        Job(id=1, created_at=datetime(2024, 1, 1), invocation_data="{}"),
        Job(id=2, created_at=datetime(2024, 1, 1), invocation_data="{}"),
        Job(id=3, created_at=datetime(2024, 1, 1), invocation_data="{}"),
    )
    return ["1", "2", "3"]
