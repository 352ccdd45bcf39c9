# gateway/conftest.py
import hashlib
import hmac
import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from gateway.api.deps import CurrentUser, get_current_user
from gateway.core.config import Settings
from gateway.core.database import create_all_tables, create_db_engine, drop_all_tables
from gateway.features.billing.event_log import BillingEventLog
from gateway.features.billing.links import CustomerLinker
from gateway.features.billing.pending import PendingReconciliationQueue
from gateway.features.billing.state import TierStateStore
from gateway.features.quota.store import QuotaStore


WEBHOOK_SECRET = "whsec_test_secret"
INTERNAL_KEY = "internal-test-key"
PRICE_PRO = "price_pro_test"
PRICE_AGENCY = "price_agency_test"
PRICE_ENTERPRISE = "price_enterprise_test"


@pytest.fixture
def settings(tmp_path):
    """Settings built explicitly; the developer's .env is never read."""
    return Settings(
        _env_file=None,
        ENV="test",
        DATABASE_URL=f"sqlite:///{tmp_path / 'gateway.db'}",
        TEST_DATABASE_URL=None,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_PRICE_PRO=PRICE_PRO,
        STRIPE_PRICE_AGENCY=PRICE_AGENCY,
        STRIPE_PRICE_ENTERPRISE=PRICE_ENTERPRISE,
        BACKEND_ORIGIN="http://backend.test",
        INTERNAL_API_KEY=INTERNAL_KEY,
    )


@pytest.fixture
def engine(settings):
    """Fresh SQLite database per test."""
    engine = create_db_engine(settings.database_url)
    create_all_tables(engine)
    yield engine
    drop_all_tables(engine)
    engine.dispose()


@pytest.fixture
def linker(engine):
    return CustomerLinker(engine)


@pytest.fixture
def tier_store(engine):
    return TierStateStore(engine)


@pytest.fixture
def quota_store(engine):
    return QuotaStore(engine)


@pytest.fixture
def event_log(engine):
    return BillingEventLog(engine)


@pytest.fixture
def pending(engine):
    return PendingReconciliationQueue(engine)


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a stripe-signature header the way Stripe signs deliveries."""
    ts = int(timestamp if timestamp is not None else time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


@pytest.fixture
def signed_event():
    """Serialize a Stripe event and return (body, headers) for a delivery."""
    def _signed(event: dict, secret: str = WEBHOOK_SECRET):
        body = json.dumps(event)
        return body.encode("utf-8"), {"stripe-signature": stripe_signature(body, secret)}
    return _signed


@pytest.fixture
def backend_calls():
    """Requests received by the fake internal backend."""
    return []


@pytest.fixture
def backend_handler():
    """Response of the fake internal backend; tests may swap it out."""
    state = {"handler": lambda request: httpx.Response(200, json={"ok": True, "jobId": "job_1"})}
    return state


@pytest.fixture
def app(settings, engine, backend_calls, backend_handler):
    from gateway.main import create_app

    def _transport(request: httpx.Request):
        backend_calls.append(request)
        return backend_handler["handler"](request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_transport))
    return create_app(settings=settings, engine=engine, http_client=http_client)


@pytest.fixture
def user():
    return CurrentUser(uid="u1", email="u1@example.com")


@pytest.fixture
def client(app, user):
    """TestClient with the session layer replaced by a fixed user."""
    app.dependency_overrides[get_current_user] = lambda: user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def anon_client(app):
    with TestClient(app) as test_client:
        yield test_client
