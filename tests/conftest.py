"""Shared fixtures: an in-memory database per test."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base, get_db
from app.main import app
from app.services.ratio_engine import RatioResolutionEngine
from app.services.recipe_bridge import RecipeRatioBridge
from app.services.storage import KeyValueStore


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield TestingSessionLocal
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(session_factory):
    return KeyValueStore(session_factory)


@pytest.fixture
def bridge(session_factory):
    return RecipeRatioBridge(session_factory)


@pytest.fixture
def ratio_engine(store, bridge):
    return RatioResolutionEngine(store=store, bridge=bridge)


@pytest.fixture
def client(session_factory, ratio_engine):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    startup_engine = app.state.ratio_engine
    app.dependency_overrides[get_db] = override_get_db
    app.state.ratio_engine = ratio_engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.ratio_engine = startup_engine
