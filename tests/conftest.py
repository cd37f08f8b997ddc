"""
Shared fixtures: every test gets a fresh in-memory SQLite store.
"""

import pytest
from fastapi.testclient import TestClient

from farmsync.database import Base, build_engine, build_session_factory
from farmsync.main import create_app


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def client(engine):
    app = create_app(engine=engine)
    with TestClient(app) as test_client:
        yield test_client
