"""Pytest configuration and fixtures for service layer tests."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session

from blend_planner.models.base import Base
from blend_planner.services.database import get_session_factory
from blend_planner.utils.config import reset_config


@pytest.fixture(scope="function")
def test_db():
    """Provide a clean test database for each test function.

    This fixture:
    1. Creates an in-memory SQLite database
    2. Creates all tables
    3. Provides the database to the test
    4. Drops all tables after the test completes
    """
    from blend_planner.models import batch, blend  # noqa: F401

    reset_config()

    # Create in-memory SQLite database for testing
    engine = create_engine("sqlite:///:memory:", echo=False)

    # Create all tables
    Base.metadata.create_all(engine)

    # Create session factory
    session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    Session = scoped_session(session_factory)

    # Monkey-patch the global session factory for tests
    import blend_planner.services.database as db_module

    original_get_session = db_module.get_session_factory
    db_module.get_session_factory = lambda: Session

    # Provide database to test
    yield Session

    # Cleanup
    Session.remove()
    Base.metadata.drop_all(engine)
    engine.dispose()

    # Restore original session factory
    db_module.get_session_factory = original_get_session
    reset_config()


@pytest.fixture(scope="function")
def make_batch(test_db):
    """Factory fixture creating batches through the batch service."""
    from blend_planner.services import batch_service

    def _make(bloom, provenance="internal", **attributes):
        return batch_service.create_batch(provenance, bloom=bloom, **attributes)

    return _make


@pytest.fixture(scope="function")
def three_batch_pool(make_batch):
    """Batches A, B, C with bloom 230, 250 and 270 (numbers 1, 2, 3)."""
    return {
        "A": make_batch(230),
        "B": make_batch(250),
        "C": make_batch(270),
    }


@pytest.fixture(scope="function")
def mid_range_pool(make_batch):
    """Six internal batches around a 240-260 target with secondary attributes."""
    return [
        make_batch(235, viscosity=3.2, ph=5.4, color="Light"),
        make_batch(242, viscosity=3.6, ph=5.6, color="Light"),
        make_batch(248, viscosity=4.4, ph=5.8, color="Dark"),
        make_batch(252, viscosity=3.8, ph=5.5, color="Light"),
        make_batch(258, viscosity=3.5, ph=6.1, color="light"),
        make_batch(266, viscosity=4.0, ph=5.9, color="Dark"),
    ]
