import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from ordersync.main import app


@pytest.fixture
def client(backend, order_row, chat_row):
    app.state.backend = backend
    with TestClient(app) as client:
        yield client
    app.state.backend = None


def test_root_and_health(client):
    assert client.get("/").json()["health"] == "/health"

    data = client.get("/health").json()
    assert data["status"] == "operational"
    assert data["provider"] == "memory"
    assert data["mounted_views"] == 2


def test_list_orders(client, order_row):
    orders = client.get("/api/orders").json()

    assert [o["id"] for o in orders] == [order_row["id"]]
    assert [i["name"] for i in orders[0]["items"]] == ["Dosa", "Lassi"]
    assert client.get("/api/orders", params={"status": "ready"}).json() == []


def test_order_status_flow(client, order_row):
    url = f"/api/orders/{order_row['id']}/status"

    response = client.patch(url, json={"status": "ready"})
    assert response.status_code == 200
    assert response.json()["status"] == "ready"

    response = client.patch(url, json={"status": "pending"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid Transition"

    assert client.patch("/api/orders/missing/status", json={"status": "ready"}).status_code == 404
    assert client.patch(url, json={"status": "teleported"}).status_code == 422

    notices = client.get("/api/notifications").json()
    assert [n["message"] for n in notices] == ["Order status updated to ready"]
    assert client.get("/api/notifications").json() == []


def test_payment_status(client, order_row):
    response = client.patch(
        f"/api/orders/{order_row['id']}/payment-status",
        json={"payment_status": "completed"},
    )

    assert response.status_code == 200
    assert response.json()["payment_status"] == "completed"


def test_tracking_lifecycle(client, order_row):
    url = f"/api/tracking/{order_row['id']}"

    started = client.post(url)
    assert started.status_code == 200
    assert started.json()["current_step"] == 0
    assert started.json()["polling"] is True
    assert client.get("/health").json()["mounted_views"] == 3

    assert client.get(url).json()["order"]["id"] == order_row["id"]
    assert client.delete(url).status_code == 200
    assert client.get(url).status_code == 404
    assert client.post("/api/tracking/missing").status_code == 404


def test_concurrent_tracking_requests_mount_one_view(client, backend, order_row):
    url = f"/api/tracking/{order_row['id']}"
    baseline = backend.subscription_count
    backend.latency = 0.05

    with ThreadPoolExecutor(max_workers=2) as pool:
        responses = list(pool.map(lambda _: client.post(url), range(2)))
    backend.latency = 0

    assert [r.status_code for r in responses] == [200, 200]
    assert backend.subscription_count == baseline + 1
    assert client.get("/health").json()["mounted_views"] == 3

    assert client.delete(url).status_code == 200
    assert backend.subscription_count == baseline


def test_invoice_endpoints(client, order_row):
    first = client.get(f"/api/orders/{order_row['id']}/invoice")
    assert first.status_code == 200
    invoice = first.json()
    assert invoice["invoice_number"] == order_row["id"][-6:].upper()

    assert client.get(f"/api/orders/{order_row['id']}/invoice").json()["id"] == invoice["id"]

    response = client.patch(
        f"/api/invoices/{invoice['id']}/contact",
        json={"customer_email": "ana@example.com"},
    )
    assert response.status_code == 200
    assert response.json()["customer_email"] == "ana@example.com"

    response = client.patch(f"/api/invoices/{invoice['id']}/contact", json={"total_amount": 0})
    assert response.status_code == 422
    response = client.patch(f"/api/invoices/{invoice['id']}/contact", json={})
    assert response.status_code == 400

    assert client.get("/api/orders/missing/invoice").status_code == 404


def test_customer_support_flow(client, chat_row, order_row):
    url = f"/api/support/{order_row['id']}"

    opened = client.post(url, json={"customer_id": "cust-1"})
    assert opened.status_code == 200
    assert opened.json()["chat"]["id"] == chat_row["id"]
    assert client.post(url, json={"customer_id": "cust-2"}).status_code == 409
    assert client.get("/health").json()["mounted_views"] == 3

    sent = client.post(f"{url}/messages", json={"content": " Any update? "}).json()
    assert sent["content"] == "Any update?"
    assert sent["sender_type"] == "customer"
    ids = [m["id"] for m in client.get(url).json()["chat"]["messages"]]
    assert len(ids) == 2 and ids.count(sent["id"]) == 1

    reply = client.post(f"/api/chats/{chat_row['id']}/messages", json={"content": "On its way"}).json()
    for _ in range(200):
        ids = [m["id"] for m in client.get(url).json()["chat"]["messages"]]
        if reply["id"] in ids:
            break
        time.sleep(0.01)
    assert ids.count(reply["id"]) == 1
    assert ids[-1] == reply["id"]

    assert client.post(f"{url}/read").json()["updated"] == 1
    assert client.delete(url).status_code == 200
    assert client.get(url).status_code == 404
    assert client.post(f"{url}/messages", json={"content": "Hello?"}).status_code == 404
    assert client.post("/api/support/missing", json={"customer_id": "cust-1"}).status_code == 404


def test_customer_message_to_resolved_chat_is_rejected(client, chat_row, order_row):
    url = f"/api/support/{order_row['id']}"
    client.post(url, json={"customer_id": "cust-1"})
    client.post(f"/api/chats/{chat_row['id']}/resolve")

    for _ in range(200):
        chat = client.get(url).json()["chat"]
        if chat["status"] == "resolved":
            break
        time.sleep(0.01)

    assert chat["status"] == "resolved"
    assert client.post(f"{url}/messages", json={"content": "Hello?"}).status_code == 400


def test_chat_endpoints(client, chat_row):
    url = f"/api/chats/{chat_row['id']}"

    response = client.post(f"{url}/messages", json={"content": "  On its way  "})
    assert response.status_code == 200
    message = response.json()
    assert message["content"] == "On its way"
    assert message["sender_type"] == "admin"
    assert "pending" not in message

    [chat] = client.get("/api/chats").json()
    ids = [m["id"] for m in chat["messages"]]
    assert ids.count(message["id"]) == 1

    assert client.post(f"{url}/messages", json={"content": "   "}).status_code == 422
    assert client.post(f"{url}/read").json()["updated"] == 1
    assert client.get("/api/chats/stats").json()["unread"] == 0

    resolved = client.post(f"{url}/resolve")
    assert resolved.json()["status"] == "resolved"
    assert client.post(f"{url}/messages", json={"content": "Hi"}).status_code == 400
    assert client.get("/api/chats", params={"status": "active"}).json() == []
    assert client.post("/api/chats/missing/resolve").status_code == 404


def test_backend_failure_maps_to_502(client, backend, order_row):
    backend.fail_next("update")

    response = client.patch(f"/api/orders/{order_row['id']}/payment-status",
                            json={"payment_status": "failed"})

    assert response.status_code == 502
    assert response.json()["error"] == "Write Failed"
