"""Pytest configuration for etsydash tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Consistent env setup, an isolated in-memory database per test and
     factories for connected stores
REFERENCES:
    - etsydash/main.py: FastAPI application
    - etsydash/database.py: Database configuration
    - etsydash/deps.py: Dependency injection
"""

import os
from datetime import timedelta
from typing import Generator, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Set test environment before any etsydash import
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string (etsydash.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("ETSY_API_KEY", "test-api-key")

TEST_USER_ID = "user-123"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared across threads (TestClient runs sync routes in a pool)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from etsydash.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)

    session = TestingSession()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def make_store(test_db_session):
    """Factory for a connected store with an encrypted token pair."""
    from etsydash.models import Store
    from etsydash.services.token_service import store_tokens
    from etsydash.utils.dates import utcnow

    counter = {"n": 0}

    def _make(
        user_id: str = TEST_USER_ID,
        shop_name: Optional[str] = None,
        access_token: Optional[str] = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: Optional[int] = 3600,
        currency: str = "USD",
    ) -> Store:
        counter["n"] += 1
        store = Store(
            user_id=user_id,
            etsy_shop_id=f"shop-{counter['n']}",
            shop_name=shop_name or f"Shop {counter['n']}",
            currency=currency,
        )
        test_db_session.add(store)
        test_db_session.commit()

        if access_token is not None:
            expires_at = utcnow() + timedelta(seconds=expires_in) if expires_in is not None else None
            store_tokens(
                test_db_session,
                store,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
            )
        return store

    return _make


@pytest.fixture
def store(make_store):
    return make_store()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session):
    """FastAPI app bound to the test session and a fixed seller."""
    from etsydash.main import create_app
    from etsydash.database import get_db
    from etsydash.deps import get_current_user_id

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_current_user_id] = lambda: TEST_USER_ID
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)
