import hashlib
import hmac
import json
import os
import tempfile

# Must be set before the app modules are imported
_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'storefront.db')}"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["EVENT_BACKEND"] = "none"

import httpx
import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from jose import jwt

from app import models  # noqa: F401
from app.config import Settings, get_settings
from app.db import Base, SessionLocal, engine
from app.gateway import CashfreeGateway
from app.main import app, get_blob_store, get_gateway

WEBHOOK_SECRET = "whsec_test"
ADMIN_EMAIL = "admin@example.com"
DELIVERABLE_KEY = "courses/current.zip"


class FakeBlobStore:
    def __init__(self):
        self.objects = set()

    def exists(self, key):
        return key in self.objects

    def read_url(self, key, expires_in):
        return f"https://blob.test/{key}?op=get&ttl={expires_in}"

    def write_url(self, key, expires_in, content_type):
        return f"https://blob.test/{key}?op=put&ttl={expires_in}"


class FakeCashfree:
    """The gateway's orders API, served through httpx.MockTransport."""

    def __init__(self):
        self.orders = {}
        self.requests = []
        self.reject_create = None
        self.omit_session = False
        self.timeout = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ConnectTimeout("timed out", request=request)

        if request.method == "POST" and request.url.path == "/pg/orders":
            if self.reject_create:
                return httpx.Response(
                    self.reject_create,
                    json={"message": "order_amount : invalid value", "code": "order_amount_invalid"},
                )
            body = json.loads(request.content)
            oid = body["order_id"]
            self.orders[oid] = {
                "order_id": oid,
                "order_status": "ACTIVE",
                "order_amount": body["order_amount"],
                "order_currency": body["order_currency"],
                "customer_details": body["customer_details"],
            }
            reply = {"order_id": oid, "order_status": "ACTIVE"}
            if not self.omit_session:
                reply["payment_session_id"] = f"session_{oid}"
            return httpx.Response(200, json=reply)

        if request.method == "GET" and request.url.path.startswith("/pg/orders/"):
            oid = request.url.path.rsplit("/", 1)[-1]
            if oid not in self.orders:
                return httpx.Response(404, json={"message": "order not found"})
            return httpx.Response(200, json=self.orders[oid])

        return httpx.Response(404, json={"message": "unknown route"})

    def pay(self, order_id, status="PAID"):
        self.orders[order_id]["order_status"] = status

    @property
    def created(self):
        return [r for r in self.requests if r.method == "POST"]


def make_settings(**overrides) -> Settings:
    values = dict(
        cashfree_app_id="app_test",
        cashfree_secret="secret_test",
        cashfree_webhook_secret=WEBHOOK_SECRET,
        cashfree_mode="TEST",
        admin_emails=frozenset({ADMIN_EMAIL}),
        blob_bucket="course-bucket",
        deliverable_key=DELIVERABLE_KEY,
    )
    values.update(overrides)
    return Settings(**values)


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def webhook_body(order_id: str, status: str = "SUCCESS", amount=1999) -> bytes:
    return json.dumps(
        {
            "type": "PAYMENT_SUCCESS_WEBHOOK",
            "data": {
                "order": {"order_id": order_id, "order_amount": amount, "order_currency": "INR"},
                "payment": {"payment_status": status, "payment_amount": amount},
            },
        }
    ).encode("utf-8")


def bearer(email: str, **claims) -> dict:
    payload = {"sub": "uid-1", "email": email}
    payload.update(claims)
    token = jwt.encode(payload, os.environ["JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def tables():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def cashfree():
    return FakeCashfree()


@pytest.fixture
def blob():
    store = FakeBlobStore()
    store.objects.add(DELIVERABLE_KEY)
    return store


@pytest.fixture
def http_client(cashfree):
    return httpx.AsyncClient(transport=httpx.MockTransport(cashfree.handler))


@pytest.fixture
def gateway(http_client, settings):
    return CashfreeGateway.from_settings(http_client, settings)


@pytest.fixture
def events(monkeypatch):
    published = []

    def fake_publish(event_type, payload, *, safe=False):
        published.append((event_type, payload))
        return True

    monkeypatch.setattr("app.lifecycle.publish", fake_publish)
    return published


@pytest.fixture
def client(settings, http_client, blob):
    def _gateway(current: Settings = Depends(get_settings)) -> CashfreeGateway:
        return CashfreeGateway.from_settings(http_client, current)

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_gateway] = _gateway
    app.dependency_overrides[get_blob_store] = lambda: blob
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def configure(client):
    """Swap the settings the app sees for the rest of the test."""

    def _configure(**overrides) -> Settings:
        current = make_settings(**overrides)
        app.dependency_overrides[get_settings] = lambda: current
        return current

    return _configure


@pytest.fixture
def place_order(client):
    def _place(email="a@b.com", amount=1999, **extra):
        r = client.post("/payments/create-order", json={"email": email, "amountINR": amount, **extra})
        assert r.status_code == 200, r.text
        return r.json()["orderId"]

    return _place


@pytest.fixture
def deliver_webhook(client):
    def _deliver(body: bytes, signature=None, **headers):
        h = {"Content-Type": "application/json"}
        if signature is not None:
            h["x-webhook-signature"] = signature
        h.update(headers)
        r = client.post("/payments/webhook", content=body, headers=h)
        assert r.status_code == 200
        return r

    return _deliver
