import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from stockkeeper.api import payments
from stockkeeper.api.deps import get_idempotency_guard, get_provider
from stockkeeper.config import settings
from stockkeeper.database import begin_write, create_db_engine, get_db
from stockkeeper.main import app
from stockkeeper.services import stock_service
from stockkeeper.services.idempotency_service import IdempotencyGuard, InMemoryIdempotencyStore
from stockkeeper.services.payment_provider import sign_payload

BUYER = {"X-User-Id": "buyer-1"}
SECRET = "whsec_api_test"


def _override_db(factory):
    def _get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    return _get_db


@pytest.fixture
def client(session_factory, provider):
    guard = IdempotencyGuard(InMemoryIdempotencyStore())
    app.dependency_overrides[get_db] = _override_db(session_factory)
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_idempotency_guard] = lambda: guard
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create_product(client, sku="MUG-1", stock=10, price="12.50"):
    resp = client.post("/api/v1/products", json={"sku": sku, "name": f"Mug {sku}", "price": price, "initial_stock": stock})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _prepare_cart(client, product_id, quantity):
    address = client.post("/api/v1/addresses", headers=BUYER, json={
        "full_name": "Ada Buyer", "line1": "1 High St", "city": "Columbus", "state": "OH", "zip_code": "43004",
    }).json()
    resp = client.post("/api/v1/cart/items", headers=BUYER, json={"product_id": product_id, "quantity": quantity})
    assert resp.status_code == 201, resp.text
    return address["id"]


def _signed(client, event):
    payload = json.dumps(event).encode()
    return client.post(
        "/api/v1/payments/webhook", content=payload, headers={"X-Signature": sign_payload(payload, SECRET)},
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_product_lifecycle(client):
    product = _create_product(client, stock=10)
    assert (product["on_hand_stock"], product["reserved_stock"], product["available_stock"]) == (10, 0, 10)
    assert client.post("/api/v1/products", json={"sku": "MUG-1", "name": "dup"}).status_code == 400

    pid = product["id"]
    assert client.post(f"/api/v1/products/{pid}/stock/receive", json={"quantity": 5}).json()["on_hand"] == 15
    assert client.post(f"/api/v1/products/{pid}/stock/damage", json={"quantity": 2}).json()["on_hand"] == 13
    assert client.post(f"/api/v1/products/{pid}/stock/adjust", json={"target_quantity": 12}).json()["on_hand"] == 12

    ledger = client.get(f"/api/v1/products/{pid}/ledger").json()
    assert [e["action"] for e in ledger] == ["purchase_in", "purchase_in", "damage_out", "adjustment_sub"]

    reconciliation = client.get(f"/api/v1/products/{pid}/reconcile").json()
    assert reconciliation["consistent"] is True
    assert client.get(f"/api/v1/products/{pid}/status").json()["status"] == "in_stock"


def test_stock_transfers(client):
    pid = _create_product(client, stock=10)["id"]
    moved = client.post(f"/api/v1/products/{pid}/stock/transfer-out", json={"quantity": 4, "location": "WH-EAST"})
    assert moved.json()["on_hand"] == 6
    assert client.post(f"/api/v1/products/{pid}/stock/transfer-out", json={"quantity": 7}).status_code == 409
    assert client.post(f"/api/v1/products/{pid}/stock/transfer-in", json={"quantity": 2, "location": "WH-EAST"}).json()["on_hand"] == 8

    ledger = client.get(f"/api/v1/products/{pid}/ledger").json()
    assert [e["action"] for e in ledger] == ["purchase_in", "transfer_out", "transfer_in"]


def test_invalid_quantity_is_bad_request(client):
    pid = _create_product(client)["id"]
    resp = client.post(f"/api/v1/products/{pid}/stock/receive", json={"quantity": 0})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "invalid_argument"


def test_unknown_product(client):
    assert client.get("/api/v1/products/missing").status_code == 404
    assert client.post("/api/v1/products/missing/stock/damage", json={"quantity": 1}).status_code == 404


def test_checkout_and_cancel(client):
    pid = _create_product(client, stock=10)["id"]
    address_id = _prepare_cart(client, pid, 4)

    resp = client.post("/api/v1/orders/checkout", headers=BUYER, json={"address_id": address_id})
    assert resp.status_code == 201, resp.text
    order = resp.json()
    assert order["status"] == "pending"
    assert order["order_number"].startswith(settings.ORDER_NUMBER_PREFIX)
    assert client.get(f"/api/v1/products/{pid}").json()["reserved_stock"] == 4
    assert client.get("/api/v1/cart", headers=BUYER).json()["items"] == []

    cancelled = client.post(f"/api/v1/orders/{order['id']}/cancel").json()
    assert cancelled["order"]["status"] == "cancelled"
    assert client.get(f"/api/v1/products/{pid}").json()["reserved_stock"] == 0

    again = client.post(f"/api/v1/orders/{order['id']}/cancel")
    assert again.status_code == 409


def test_checkout_shortfall_lists_items(client):
    pid = _create_product(client, stock=2)["id"]
    address_id = _prepare_cart(client, pid, 5)

    resp = client.post("/api/v1/orders/checkout", headers=BUYER, json={"address_id": address_id})

    assert resp.status_code == 409
    detail = resp.json()["detail"]
    assert detail["code"] == "insufficient_stock"
    assert detail["items"][0]["product_id"] == pid
    assert (detail["items"][0]["requested"], detail["items"][0]["available"]) == (5, 2)


def test_checkout_requires_user(client):
    assert client.post("/api/v1/orders/checkout", json={"address_id": "x"}).status_code == 422


def test_checkout_session_then_webhook_creates_one_order(client, provider, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", SECRET)
    pid = _create_product(client, stock=10)["id"]
    address_id = _prepare_cart(client, pid, 3)

    first = client.post("/api/v1/payments/checkout-session", headers=BUYER, json={"address_id": address_id}).json()
    second = client.post("/api/v1/payments/checkout-session", headers=BUYER, json={"address_id": address_id}).json()
    assert first["session_id"] == second["session_id"]
    assert second["replayed"] is True

    session = provider.complete(first["session_id"], payment_reference="pi_api")
    event = {
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session.id, "payment_status": "paid", "payment_intent": "pi_api", "metadata": session.metadata,
        }},
    }
    delivered = _signed(client, event).json()
    redelivered = _signed(client, event).json()

    assert delivered["order_id"] == redelivered["order_id"]
    assert redelivered["info"] == "already_exists"
    assert client.get(f"/api/v1/products/{pid}").json()["reserved_stock"] == 3
    orders = client.get("/api/v1/orders", params={"user_id": "buyer-1"}).json()
    assert len(orders) == 1
    assert orders[0]["payment_status"] == "paid"

    verified = client.post("/api/v1/payments/verify-session", headers=BUYER, json={"session_id": session.id}).json()
    assert verified["order"]["id"] == delivered["order_id"]


def test_webhook_rejects_bad_signature(client, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", SECRET)
    resp = client.post("/api/v1/payments/webhook", content=b"{}", headers={"X-Signature": "t=1,v1=deadbeef"})
    assert resp.status_code == 400


def test_webhook_handles_events_off_the_event_loop(client, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", SECRET)
    seen = []
    handle = payments._handle_event

    def _recording(db, event, calculator):
        try:
            asyncio.get_running_loop()
            seen.append("event loop")
        except RuntimeError:
            seen.append("worker thread")
        return handle(db, event, calculator)

    monkeypatch.setattr(payments, "_handle_event", _recording)
    assert _signed(client, {"type": "charge.refunded", "data": {"object": {}}}).json() == {"received": True}
    assert seen == ["worker thread"]


def test_failed_payment_event_is_acknowledged_without_touching_orders(client, provider, monkeypatch):
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", SECRET)
    pid = _create_product(client, stock=10)["id"]
    address_id = _prepare_cart(client, pid, 2)
    started = client.post("/api/v1/payments/checkout-session", headers=BUYER, json={"address_id": address_id}).json()

    event = {
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_declined", "last_payment_error": {"message": "card declined"}}},
    }
    resp = _signed(client, event)

    assert resp.status_code == 200
    assert resp.json() == {"received": True}
    assert client.get("/api/v1/orders", params={"user_id": "buyer-1"}).json() == []
    assert client.get(f"/api/v1/products/{pid}").json()["reserved_stock"] == 0
    assert started["session_id"]


def test_lock_timeout_is_service_unavailable(client, test_db, db_url):
    pid = _create_product(client)["id"]
    impatient = create_db_engine(db_url, lock_timeout=0.2)
    app.dependency_overrides[get_db] = _override_db(sessionmaker(bind=impatient))
    try:
        begin_write(test_db)
        stock_service.lock_products(test_db, [pid])
        resp = client.post(f"/api/v1/products/{pid}/stock/receive", json={"quantity": 1})
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "1"
        assert resp.json()["detail"]["code"] == "contention"
    finally:
        test_db.rollback()
        impatient.dispose()
