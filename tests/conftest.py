"""
Content Engine - Pytest Configuration
Global fixtures: an in-memory database per test, factories and an API client.
"""

import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_TABLES"] = "false"
os.environ["TOKENS"] = "[]"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from content_engine.core.db import get_db
from content_engine.core.settings import config_settings
from content_engine.main import app
from content_engine.models.orm.base import Base
from content_engine.models.schemas.content import (
    ContentItemCreateModel,
    VisibilityOverrideCreateModel,
)
from content_engine.models.schemas.experiment import ExperimentCreateModel
from content_engine.repositories.assignment_repo import AssignmentRepository
from content_engine.repositories.content_repo import ContentRepository
from content_engine.repositories.experiment_repo import ExperimentRepository
from content_engine.repositories.override_repo import OverrideRepository
from content_engine.services.bucketing import BucketingAssigner

ADMIN_TOKEN = "test-admin-token"


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory SQLite shared by every connection of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_item(db):
    """Creates a content item; keyword arguments override the defaults."""

    def _make(**fields):
        data = {"type": "hero", "title": "Welcome", "order": 0}
        data.update(fields)
        return ContentRepository(db).create_content_item(ContentItemCreateModel(**data))

    return _make


@pytest.fixture
def make_override(db):
    def _make(content_item_id, **fields):
        return OverrideRepository(db).create_override(
            content_item_id, VisibilityOverrideCreateModel(**fields)
        )

    return _make


@pytest.fixture
def make_experiment(db):
    """
    Creates an experiment. Defaults to an active, fully allocated hero
    experiment with a 50/50 Control / VariantA split.
    """
    counter = {"n": 0}

    def _make(**fields):
        counter["n"] += 1
        data = {
            "name": f"experiment-{counter['n']}",
            "content_type": "hero",
            "status": "active",
            "traffic_allocation": 100,
            "variants": [
                {"variant_name": "Control", "traffic_weight": 50, "is_control": True},
                {"variant_name": "VariantA", "traffic_weight": 50},
            ],
        }
        data.update(fields)
        return ExperimentRepository(db).create_experiment(ExperimentCreateModel(**data))

    return _make


@pytest.fixture
def assigner(db):
    return BucketingAssigner(AssignmentRepository(db))


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def client(session_factory, monkeypatch):
    """TestClient bound to the per-test database, with one admin token configured."""
    monkeypatch.setattr(config_settings, "TOKENS", [ADMIN_TOKEN])

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
