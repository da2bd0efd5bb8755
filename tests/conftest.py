import os
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from carrier_db import Base

FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "fixtures")


@pytest.fixture
def engine():
    # one shared in-memory connection so every session sees the same tables
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def load_html():
    def _load(name):
        with open(os.path.join(FIXTURES_DIR, name), encoding="utf-8") as f:
            return f.read()
    return _load


@pytest.fixture
def snapshot_html(load_html):
    return load_html("safer_snapshot.html")


@pytest.fixture
def now():
    return datetime(2025, 6, 1, 12, 0, 0)
