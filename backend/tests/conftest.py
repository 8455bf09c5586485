from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import freeride.models  # noqa: F401
from freeride.db.base import Base


@pytest.fixture
def engine():
    """In-memory SQLite database created from the models, fresh for each test."""
    eng = create_engine("sqlite://", echo=False)
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    # autoflush=False matches freeride.db.session.SessionLocal
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def frozen_now(monkeypatch):
    """Pin the ledger clock; the returned clock can be moved forward by a test."""
    from tests.testkit import FrozenClock

    clock = FrozenClock()
    monkeypatch.setattr("freeride.services.free_days.now_utc", clock)
    return clock
