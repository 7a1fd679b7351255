"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database: the schema is created before
and dropped after every test, so nothing leaks between tests. Outbound Terra
calls go to `FakeTerraClient`; time comes from a fixed clock.
"""
import os
import sys
from datetime import datetime, timezone

import pytest

# Configure before any application module reads settings.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.pop("TERRA_WEBHOOK_SECRET", None)

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from core.database import Base, SessionLocal, engine, get_db
from core.dependencies import get_clock, get_terra_client, get_webhook_secret
from core.exceptions import UpstreamError
from services.terra_client import WidgetSession
import models  # noqa: F401  (registers tables on Base.metadata)

FIXED_NOW = datetime(2024, 1, 10, 12, 0, 0, tzinfo=timezone.utc)


class FakeTerraClient:
    """Records calls; fails on demand."""

    def __init__(self):
        self.deauthenticated = []
        self.widget_requests = []
        self.fail_with = None

    def deauthenticate_user(self, external_user_id):
        self.deauthenticated.append(external_user_id)
        if self.fail_with is not None:
            raise self.fail_with

    def generate_widget_session(self, reference_id, providers=None, success_url=None, failure_url=None, language="en"):
        self.widget_requests.append({
            "reference_id": reference_id,
            "providers": providers,
            "success_url": success_url,
            "failure_url": failure_url,
            "language": language,
        })
        if self.fail_with is not None:
            raise self.fail_with
        return WidgetSession(url="https://widget.tryterra.co/session/abc", session_id="abc", expires_at="2024-01-10T12:15:00Z")


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def terra_client():
    return FakeTerraClient()


@pytest.fixture
def webhook_secret():
    """Override per test with a string to require signatures."""
    return None


@pytest.fixture
def client(fixed_clock, terra_client, webhook_secret):
    from main import app

    def _get_db():
        db = SessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: fixed_clock
    app.dependency_overrides[get_terra_client] = lambda: terra_client
    app.dependency_overrides[get_webhook_secret] = lambda: webhook_secret
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def upstream_failure():
    return UpstreamError("Terra DELETE /auth/deauthenticateUser failed: timed out")
