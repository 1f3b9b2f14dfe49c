import pytest
from fastapi.testclient import TestClient

from order_service.errors import ConflictError, UpstreamError, WriteOutcomeUnknownError
from order_service.main import AppContext, create_app
from order_service.models import OrderStatus
from order_service.notifier import NotificationDispatcher
from order_service.orchestrator import OrderOrchestrator

from conftest import make_create_request


@pytest.fixture
def client(repository, cache, payments, users, sender, publisher, settings):
    notifications = NotificationDispatcher(sender)
    orchestrator = OrderOrchestrator(
        repository=repository,
        cache=cache,
        payments=payments,
        users=users,
        notifications=notifications,
        publisher=publisher,
        settings=settings,
    )
    app = create_app(
        context=AppContext(
            settings=settings, orchestrator=orchestrator, notifications=notifications
        )
    )
    with TestClient(app) as client:
        yield client


def _create(client) -> dict:
    resp = client.post("/api/v2/orders", json=make_create_request().model_dump(mode="json"))
    assert resp.status_code == 201
    return resp.json()


def test_create_and_get_order(client):
    created = _create(client)

    assert created["status"] == "pending"
    assert created["total"] == {"amount": 3220, "currency": "USD"}
    assert created["items"][0]["line_total"] == {"amount": 2000, "currency": "USD"}

    resp = client.get(f"/api/v2/orders/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["id"] == created["id"]


def test_validation_error_returns_field(client):
    resp = client.post("/api/v2/orders", json={"user_id": "user-1", "items": []})
    assert resp.status_code == 400
    assert resp.json() == {"error": "at least one item is required", "field": "items"}


def test_not_found(client):
    resp = client.get("/api/v2/orders/ord_missing")
    assert resp.status_code == 404
    assert resp.json()["error"] == "order ord_missing not found"


def test_status_update_and_invalid_transition(client):
    order_id = _create(client)["id"]

    resp = client.patch(f"/api/v2/orders/{order_id}/status", json={"status": "confirmed"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "confirmed"

    resp = client.patch(f"/api/v2/orders/{order_id}/status", json={"status": "delivered"})
    assert resp.status_code == 400
    assert resp.json()["field"] == "status"


def test_conflict_maps_to_409(client, repository):
    order_id = _create(client)["id"]
    repository.fail_update = ConflictError(order_id, "pending", "confirmed")

    resp = client.post(f"/api/v2/orders/{order_id}/cancel", json={"reason": "oops"})

    assert resp.status_code == 409
    assert "pending" not in resp.json()["error"]


def test_unknown_outcome_maps_to_504(client, repository):
    order_id = _create(client)["id"]
    repository.fail_update = WriteOutcomeUnknownError(order_id, "transition to confirmed")

    resp = client.patch(f"/api/v2/orders/{order_id}/status", json={"status": "confirmed"})

    assert resp.status_code == 504


@pytest.mark.parametrize("retryable,status_code", [(True, 503), (False, 502)])
def test_upstream_errors(client, payments, retryable, status_code):
    order_id = _create(client)["id"]
    payments.charge_error = UpstreamError(
        "payment-service", "card declined", retryable=retryable, status_code=402
    )

    resp = client.post(
        f"/api/v2/orders/{order_id}/payment",
        json={"method": "credit_card", "card_token": "tok"},
    )

    assert resp.status_code == status_code
    assert "declined" not in resp.json()["error"]


def test_payment_flow(client, repository):
    order_id = _create(client)["id"]

    resp = client.get(f"/api/v2/orders/{order_id}/payment")
    assert resp.status_code == 404

    resp = client.post(
        f"/api/v2/orders/{order_id}/payment",
        json={"method": "credit_card", "card_token": "tok", "amount": {"amount": 1, "currency": "USD"}},
    )
    assert resp.status_code == 200
    assert resp.json() == {"payment_id": f"pay_{order_id}", "status": "completed"}
    assert repository.orders[order_id].status == OrderStatus.CONFIRMED

    resp = client.get(f"/api/v2/orders/{order_id}/payment")
    assert resp.status_code == 200
    assert resp.json()["id"] == f"pay_{order_id}"


def test_refund_flow(client, repository):
    order_id = _create(client)["id"]
    client.post(
        f"/api/v2/orders/{order_id}/payment",
        json={"method": "credit_card", "card_token": "tok"},
    )
    for status in ("processing", "shipped", "delivered"):
        client.patch(f"/api/v2/orders/{order_id}/status", json={"status": status})

    resp = client.post(f"/api/v2/orders/{order_id}/refund", json={"reason": "damaged"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "refunded"
    assert repository.orders[order_id].status == OrderStatus.REFUNDED


def test_list_and_user_orders(client):
    _create(client)
    _create(client)

    resp = client.get("/api/v2/orders", params={"status": "pending", "limit": 1})
    assert resp.status_code == 200
    assert resp.json()["total"] == 2
    assert len(resp.json()["orders"]) == 1

    resp = client.get("/api/v2/orders", params={"status": "lost"})
    assert resp.status_code == 400

    resp = client.get("/api/v2/orders", params={"offset": -1})
    assert resp.status_code == 400

    resp = client.get("/api/v2/users/user-1/orders")
    assert resp.json()["total"] == 2


def test_webhook(client, repository):
    order_id = _create(client)["id"]
    payload = {"id": "evt_1", "type": "payment.completed", "order_id": order_id}

    resp = client.post(
        "/api/v2/webhooks/payment", json=payload, headers={"X-Payment-Signature": "sig"}
    )
    assert resp.status_code == 200
    assert repository.orders[order_id].status == OrderStatus.CONFIRMED

    resp = client.post("/api/v2/webhooks/payment", json=payload)
    assert resp.status_code == 400
    assert resp.json()["field"] == "signature"


def test_delete_order(client):
    order_id = _create(client)["id"]

    resp = client.delete(f"/api/v2/orders/{order_id}")
    assert resp.status_code == 204

    assert client.get(f"/api/v2/orders/{order_id}").status_code == 404


def test_health_and_ready(client):
    assert client.get("/health").json() == {"status": "ok", "service": "order-service"}
    resp = client.get("/ready")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ready", "checks": {}}
