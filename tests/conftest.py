"""Pytest configuration and fixtures."""

import pytest
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from kortingdeal.models import Base
from kortingdeal.services.product_store import seed_categories


# in-memory SQLite shared by every connection of the test
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


def _patch_jsonb_to_json(base):
    """
    Swap JSONB columns for JSON so the schema compiles on SQLite.
    Test-only.
    """
    from sqlalchemy.dialects.postgresql import JSONB

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    Database session on a fresh in-memory schema for every test.
    """
    _patch_jsonb_to_json(Base)
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """test_session with the category taxonomy already seeded."""
    seed_categories(test_session)
    test_session.commit()
    yield test_session


@pytest.fixture
def session_factory():
    return TestSessionLocal


def pytest_configure(config):
    """Register test markers."""
    config.addinivalue_line("markers", "unit: unit tests (no database needed)")
    config.addinivalue_line("markers", "integration: integration tests (SQLite store or HTTP app)")
    config.addinivalue_line("markers", "slow: slow tests (> 1 min)")
