# tests/conftest.py

import asyncio
import json
import time

import pytest
from sqlalchemy.pool import NullPool
from starlette.testclient import TestClient

from ticketgate import config
from ticketgate.infra import timings
from ticketgate.infra.sql import make_database
from ticketgate.model.db import create_schema
from ticketgate.model.ledger import new_ledger
from ticketgate.model.store import TicketStore
from ticketgate.payments import MockPay

MOCK_SECRET = "test-mock-secret"
OPERATOR_SECRET = "letmein"


def run_async(coro):
    """Helper to run async coroutines in sync tests."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class RecordingMailer:
    """Stands in for the outbound mailer; keeps what would have been sent."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_ticket(self, mail):
        if self.fail:
            raise RuntimeError("mail provider unavailable")
        self.sent.append(mail)

    async def aclose(self):
        return None


def checkout_event(
    session_id="cs_test_001",
    email="parent@example.com",
    event_id="evt-spring",
    event_name="Spring Gala",
    student_name="Ada Lovelace",
    customer="cus_001",
    event_type="checkout.session.completed",
):
    """A checkout.session.completed notification as the provider sends it."""
    custom_fields = []
    if student_name is not None:
        custom_fields = [{"key": "studentname",
                          "text": {"value": student_name}}]
    metadata = {}
    if event_id is not None:
        metadata["event_id"] = event_id
    if event_name is not None:
        metadata["event_name"] = event_name
    return {
        "id": f"evt_{session_id}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "customer": customer,
                "customer_details": {"email": email},
                "customer_email": None,
                "metadata": metadata,
                "custom_fields": custom_fields,
            }
        },
    }


def mock_signed(event: dict, secret: str = MOCK_SECRET):
    payload = json.dumps(event).encode()
    sig = MockPay(secret).sign(payload)
    return payload, {"x-mockpay-signature": sig,
                     "content-type": "application/json"}


@pytest.fixture(autouse=True)
def clean_timings():
    # samples are process-global
    timings.reset()
    yield
    timings.reset()


# --- Database Setup ---
@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ticketgate.db'}"


@pytest.fixture
def db(db_url):
    # NullPool: every run_async() gets fresh connections on its own loop
    database = make_database(db_url, poolclass=NullPool)

    async def _init():
        async with database.engine.begin() as conn:
            await create_schema(conn)

    run_async(_init())
    yield database
    run_async(database.dispose())


@pytest.fixture
def store(db):
    return TicketStore(db)


@pytest.fixture
def ledger(db):
    return new_ledger(db=db, backend="pg")


@pytest.fixture
def event_id(store):
    return run_async(
        store.create_event("Spring Gala", "price_123", event_id="evt-spring")
    )


@pytest.fixture
def other_event_id(store):
    return run_async(
        store.create_event("Autumn Fair", "price_456", event_id="evt-autumn")
    )


# --- Test Client Fixtures ---
@pytest.fixture
def client(db_url, db, monkeypatch):
    """
    TestClient against the real app: SQLite store, SQL ledger backend,
    mock payment provider and a recording mailer.
    """
    monkeypatch.setattr(config, "DATABASE_URL", db_url)
    monkeypatch.setattr(config, "LEDGER_BACKEND", "pg")
    monkeypatch.setattr(config, "PAYMENT_PROVIDER", "mock")
    monkeypatch.setenv("MOCK_SECRET", MOCK_SECRET)
    monkeypatch.setenv("OPERATOR_SECRET", OPERATOR_SECRET)
    monkeypatch.delenv("MAIL_API_KEY", raising=False)
    monkeypatch.delenv("MAIL_FROM", raising=False)

    from ticketgate.server import app

    with TestClient(app) as c:
        app.state.mailer = RecordingMailer()
        yield c


@pytest.fixture
def auth_headers(client):
    r = client.post("/auth/login", json={"privateCode": OPERATOR_SECRET})
    assert r.status_code == 200
    return {"Authorization": f"Bearer {r.json()['token']}"}


def stripe_signature(payload: bytes, secret: str, ts: int = None) -> str:
    """Header value signed the way Stripe signs webhook deliveries."""
    import hashlib
    import hmac

    ts = int(time.time()) if ts is None else ts
    signed = f"{ts}.{payload.decode()}".encode()
    v1 = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={v1}"
