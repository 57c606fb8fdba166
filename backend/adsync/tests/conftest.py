"""Pytest configuration for adsync tests

WHAT: Shared fixtures for service and HTTP endpoint tests
WHY: Every test gets an isolated in-memory database and a TestClient wired to it
REFERENCES:
    - adsync/main.py: FastAPI application
    - adsync/database.py: Database configuration
    - adsync/deps.py: Settings and internal key guard
"""

import os
from datetime import datetime, timedelta
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before any adsync module reads it
# Must be URL-safe base64-encoded 32-byte string
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("META_APP_ID", "test-app-id")
os.environ.setdefault("META_APP_SECRET", "test-app-secret")

INTERNAL_KEY = os.environ["INTERNAL_API_KEY"]


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite engine shared across threads (TestClient runs sync routes in a pool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from adsync.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(db):
    from adsync.database import get_db
    from adsync.main import create_app

    test_app = create_app()

    def override_get_db():
        yield db

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def internal_headers():
    return {"X-Internal-Key": INTERNAL_KEY}


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def vault():
    from adsync.security import get_token_vault
    return get_token_vault()


@pytest.fixture
def workspace(db):
    from adsync.models import Workspace

    ws = Workspace(name="Test Workspace")
    db.add(ws)
    db.commit()
    db.refresh(ws)
    return ws


@pytest.fixture
def other_workspace(db):
    """Second workspace (for isolation tests)."""
    from adsync.models import Workspace

    ws = Workspace(name="Other Workspace")
    db.add(ws)
    db.commit()
    db.refresh(ws)
    return ws


def make_connection(db, vault, workspace, *, token="EAAB-test-token", status=None, is_default=True, meta_user_id="u-1"):
    from adsync.models import Connection, ConnectionStatusEnum, ProviderEnum, Token

    sealed = vault.store(workspace.id, token)
    token_row = Token(
        provider=ProviderEnum.meta,
        access_token_enc=sealed.value,
        token_encrypted=sealed.encrypted,
        expires_at=datetime.utcnow() + timedelta(days=60),
    )
    db.add(token_row)
    db.flush()

    connection = Connection(
        workspace_id=workspace.id,
        provider=ProviderEnum.meta,
        name="Test Connection",
        meta_user_id=meta_user_id,
        status=status or ConnectionStatusEnum.connected,
        is_default=is_default,
        token_id=token_row.id,
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


def make_account(db, workspace, connection, *, external_id="1234567890", timezone="UTC"):
    from adsync.models import AdAccount

    account = AdAccount(
        workspace_id=workspace.id,
        external_id=external_id,
        name=f"Account {external_id}",
        currency="EUR",
        timezone=timezone,
        account_status="ACTIVE",
        primary_connection_id=connection.id if connection else None,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def connection(db, vault, workspace):
    return make_connection(db, vault, workspace)


@pytest.fixture
def account(db, workspace, connection):
    return make_account(db, workspace, connection)


@pytest.fixture
def connection_factory(db, vault, workspace):
    def _factory(target_workspace=None, **kwargs):
        return make_connection(db, vault, target_workspace or workspace, **kwargs)
    return _factory


@pytest.fixture
def account_factory(db, workspace):
    def _factory(connection, target_workspace=None, **kwargs):
        return make_account(db, target_workspace or workspace, connection, **kwargs)
    return _factory
