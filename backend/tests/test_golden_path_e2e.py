import hashlib
import hmac
import json
import os
import sys
from uuid import uuid4

import httpx
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from localserve.main import app
from localserve.services.payment_gateway import PaymentGateway

client = TestClient(app)


def _login(user_id: str) -> str:
    response = client.post("/auth/login", json={"user_id": user_id, "password": "localserve-demo"})
    assert response.status_code == 200
    payload = response.json()
    return payload["access_token"]


def test_golden_path_apply_request_accept_complete_pay(monkeypatch):
    def order_handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(200, json={"id": f"order_{uuid4().hex[:12]}", "amount": body["amount"], "currency": "INR"})

    monkeypatch.setattr(
        "localserve.routers.payments.payment_gateway",
        PaymentGateway(key_id="rzp_golden", key_secret="golden_secret", transport=httpx.MockTransport(order_handler)),
    )

    owner_user = f"golden_owner_{uuid4().hex[:8]}"
    customer_user = f"golden_customer_{uuid4().hex[:8]}"

    owner_token = _login(owner_user)
    owner_headers = {"Authorization": f"Bearer {owner_token}"}
    application = client.post(
        "/providers/applications",
        json={
            "user_id": owner_user,
            "user_name": "Golden Owner",
            "email": "owner@example.com",
            "business_name": f"Golden Dairy {uuid4().hex[:6]}",
            "services": ["dairy"],
            "service_pincodes": [{"pincode": "400001", "city": "Mumbai"}],
        },
        headers=owner_headers,
    )
    assert application.status_code == 200

    admin_token = _login("admin_1")
    review = client.post(
        f"/admin/applications/{owner_user}/review",
        json={"actor_user_id": "admin_1", "decision": "approved"},
        headers={"Authorization": f"Bearer {admin_token}"},
    )
    assert review.status_code == 200
    provider_id = review.json()["provider"]["id"]

    customer_token = _login(customer_user)
    customer_headers = {"Authorization": f"Bearer {customer_token}"}
    created = client.post(
        "/requests",
        json={
            "user_id": customer_user,
            "customer_name": "Golden Customer",
            "customer_email": "customer@example.com",
            "customer_pincode": "400001",
            "customer_city": "Mumbai",
            "items": [{"name": "Paneer 500g", "service_type": "dairy", "quantity": 1, "price": 180}],
            "delivery_date": "2026-03-02",
            "delivery_time": "08:00",
        },
        headers=customer_headers,
    )
    assert created.status_code == 200
    request_id = created.json()["request"]["id"]
    assert created.json()["request"]["available_providers"] == [provider_id]

    owner_notifications = client.get("/notifications", params={"user_id": owner_user}, headers=owner_headers).json()
    request_notification = next(item for item in owner_notifications if item["category"] == "request")
    assert request_notification["deep_link"] == f"request:{request_id}"

    inbox = client.get(f"/requests/provider/{provider_id}", params={"user_id": owner_user}, headers=owner_headers)
    assert [item["request"]["id"] for item in inbox.json()] == [request_id]

    accepted = client.post(
        f"/requests/{request_id}/respond",
        json={"actor_user_id": owner_user, "provider_id": provider_id, "decision": "accepted"},
        headers=owner_headers,
    )
    assert accepted.json()["status"] == "accepted"

    completed = client.post(
        f"/requests/{request_id}/status",
        json={"actor_user_id": owner_user, "status": "completed", "note": "Delivered at the gate"},
        headers=owner_headers,
    )
    assert completed.json()["status"] == "completed"

    order = client.post("/payments/orders", json={"user_id": customer_user, "request_id": request_id}, headers=customer_headers)
    assert order.status_code == 200
    order_id = order.json()["gateway_order_id"]
    signature = hmac.new(b"golden_secret", f"{order_id}|pay_golden".encode("utf-8"), hashlib.sha256).hexdigest()

    paid = client.post(
        "/payments/verify",
        json={
            "user_id": customer_user,
            "request_id": request_id,
            "gateway_order_id": order_id,
            "gateway_payment_id": "pay_golden",
            "signature": signature,
        },
        headers=customer_headers,
    )
    assert paid.status_code == 200
    assert paid.json()["status"] == "paid"
    assert paid.json()["label"] == "Paid"

    timeline = client.get(f"/requests/{request_id}/timeline", params={"user_id": customer_user}).json()
    assert [event["status"] for event in timeline][-1] == "paid"

    customer_notifications = client.get("/notifications", params={"user_id": customer_user}).json()
    payment_notification = next(item for item in customer_notifications if item["category"] == "payment")
    mark_read = client.post(
        f"/notifications/{payment_notification['id']}/read",
        params={"user_id": customer_user},
        headers=customer_headers,
    )
    assert mark_read.status_code == 200
    assert mark_read.json()["read"] is True
