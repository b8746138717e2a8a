"""Pytest configuration and fixtures.

Everything runs against in-memory SQLite (StaticPool, one shared connection)
and a fake Stripe client. Webhook payloads are signed locally and verified by
the real stripe SDK.
"""

import os

# Before any billsync_api import: getters read these lazily, but main.py
# configures logging at import time.
os.environ.setdefault("BILLSYNC_ENV", "test")
os.environ["BILLSYNC_JSON_LOGS"] = "false"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SESSION_SECRET", "test-session-secret-0123456789abcdef")
os.environ.setdefault("IDENTITY_TOKEN_SECRET", "test-identity-secret-0123456789abcdef")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_billsync")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_billsync")
os.environ.setdefault("STRIPE_PRICE_ID_BASIC", "price_basic")
os.environ.setdefault("STRIPE_PRICE_ID_YEARLY", "price_yearly")
os.environ.setdefault("BASE_URL", "http://testserver")

from typing import Any
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from billsync_api.analytics.sinks import InMemoryLifecycleSink
from billsync_api.auth.session_token import SessionTokenBroker
from billsync_api.db.models import Account, Base
from billsync_api.db.session import configure_database, get_engine
from tests.billing_helpers import FakeStripeClient

_ROUTER_MODULES = ("webhooks", "checkout", "user", "auth")


@pytest.fixture(scope="function")
def session_factory():
    """Fresh in-memory database wired into the process-wide session factory."""
    factory = configure_database("sqlite://")
    Base.metadata.create_all(get_engine())
    yield factory
    Base.metadata.drop_all(get_engine())


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def make_account(db_session):
    """Insert an account row; keyword args override the defaults."""
    counter = {"n": 0}

    def _make(**fields: Any) -> Account:
        counter["n"] += 1
        n = counter["n"]
        values = {
            "id": f"acct_{n}",
            "email": f"user{n}@example.com",
            "name": f"User {n}",
            "customer_id": f"cus_{n}",
        }
        values.update(fields)
        account = Account(**values)
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def lifecycle_sink() -> InMemoryLifecycleSink:
    return InMemoryLifecycleSink()


@pytest.fixture
def broker() -> SessionTokenBroker:
    return SessionTokenBroker(
        os.environ["SESSION_SECRET"],
        max_age_seconds=30 * 24 * 3600,
        refresh_interval_seconds=300,
    )


@pytest.fixture
def patched_providers(fake_stripe, lifecycle_sink):
    """Route every router's provider client and lifecycle sink to the fakes."""
    patchers = []
    for module in _ROUTER_MODULES:
        patchers.append(patch(f"billsync_api.routers.{module}.get_stripe_client", return_value=fake_stripe))
        patchers.append(patch(f"billsync_api.routers.{module}.get_lifecycle_sink", return_value=lifecycle_sink))
    for p in patchers:
        p.start()
    yield
    for p in reversed(patchers):
        p.stop()


@pytest.fixture
def client(session_factory, patched_providers):
    """TestClient with the fake provider and in-memory sink patched into every router."""
    from billsync_api.main import create_app

    with TestClient(create_app(), base_url="http://testserver", follow_redirects=False) as test_client:
        yield test_client
