from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"

from mxcore.database import init_db  # noqa: E402
from mxcore.apps.events import broker as events  # noqa: E402


@pytest.fixture()
def engine(tmp_path):
    # File-backed so several sessions can race on the same rows.
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'mxcore-test.db'}")
    init_db(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _clear_event_history():
    events.broker.clear()
    yield
    events.broker.clear()
