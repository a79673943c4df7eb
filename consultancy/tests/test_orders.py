import hashlib
import hmac
import json
import time

from consultancy.models import IntegrationLog, Order

from .conftest import build_test_app, service_id


def _order_payload(app, *lines, **extra):
    items = [{"serviceId": service_id(app, slug), "quantity": quantity} for slug, quantity in lines]
    payload = {"customerName": "Jane Doe", "customerEmail": "Jane@Example.com", "items": items}
    payload.update(extra)
    return payload


def _create_order(client, app, *lines):
    response = client.post("/api/orders", json=_order_payload(app, *lines))
    assert response.status_code == 201, response.get_json()
    return response.get_json()["data"]["orderNumber"]


def _order(app, order_number):
    with app.app_context():
        return Order.query.filter_by(order_number=order_number).one().to_dict()


def test_create_order_applies_vat_and_returns_mock_payment_url(client, app, sent_emails):
    response = client.post("/api/orders", json=_order_payload(app, ("strategic-assessment", 1), ("curriculum-review", 2)))
    assert response.status_code == 201
    body = response.get_json()
    assert body["message"] == "Order created successfully"
    assert body["data"]["total"] == 6600.0
    assert body["data"]["paymentUrl"].startswith("http://localhost:5173/checkout/success")

    order = _order(app, body["data"]["orderNumber"])
    assert order["subtotal"] == 5500.0
    assert order["tax"] == 1100.0
    assert order["status"] == "pending"
    assert order["payment_status"] == "unpaid"
    assert order["customer"]["email"] == "jane@example.com"
    assert order["customer"]["firstName"] == "Jane"
    assert order["stripe_session_id"].startswith("mock_session_")

    assert [message["To"] for message in sent_emails] == ["jane@example.com"]
    assert body["data"]["orderNumber"] in sent_emails[0]["Subject"]


def test_repeated_services_are_merged_into_one_line(client, app):
    order_number = _create_order(client, app, ("curriculum-review", 1), ("curriculum-review", 2))
    items = _order(app, order_number)["items"]
    assert len(items) == 1
    assert items[0]["quantity"] == 3


def test_unknown_or_inactive_service_rejects_order(client, app):
    payload = _order_payload(app, ("curriculum-review", 1))
    payload["items"].append({"serviceId": 99999, "quantity": 1})
    response = client.post("/api/orders", json=payload)
    assert response.status_code == 400
    assert response.get_json()["message"] == "One or more services not found"
    with app.app_context():
        assert Order.query.count() == 0


def test_order_validation_errors(client):
    response = client.post("/api/orders", json={"customerName": "J", "customerEmail": "nope", "items": []})
    assert response.status_code == 422
    errors = response.get_json()["errors"]
    assert set(errors) >= {"customerName", "customerEmail", "items"}

    bad_line = client.post(
        "/api/orders",
        json={"customerName": "Jane Doe", "customerEmail": "jane@example.com", "items": [{"serviceId": 0}]},
    )
    assert bad_line.status_code == 422
    assert "items.0.serviceId" in bad_line.get_json()["errors"]


def test_my_orders_lists_orders_by_user_or_email(customer_client, client, app):
    own = customer_client.post(
        "/api/orders",
        json={**_order_payload(app, ("curriculum-review", 1)), "customerEmail": "someone@else.com"},
    )
    assert own.status_code == 201
    guest = client.post("/api/orders", json={**_order_payload(app, ("academic-writing-intensive", 1)), "customerEmail": "jane@example.com"})
    assert guest.status_code == 201

    response = customer_client.get("/api/orders/my-orders")
    assert response.status_code == 200
    numbers = {order["order_number"] for order in response.get_json()["data"]}
    assert numbers == {own.get_json()["data"]["orderNumber"], guest.get_json()["data"]["orderNumber"]}

    assert client.get("/api/orders/my-orders").status_code == 401


def test_admin_status_update_emails_customer(admin_client, client, app, sent_emails):
    order_number = _create_order(client, app, ("curriculum-review", 1))
    order_id = _order(app, order_number)["id"]
    sent_emails.clear()

    response = admin_client.patch(f"/api/admin/orders/{order_id}/status", json={"status": "in_progress"})
    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "in_progress"
    assert len(sent_emails) == 1
    assert sent_emails[0]["Subject"] == f"Order {order_number} update: In Progress"

    sent_emails.clear()
    unchanged = admin_client.patch(f"/api/admin/orders/{order_id}/status", json={"status": "in_progress"})
    assert unchanged.status_code == 200
    assert sent_emails == []

    invalid = admin_client.patch(f"/api/admin/orders/{order_id}/status", json={"status": "shipped"})
    assert invalid.status_code == 422


def test_admin_payment_status_update(admin_client, client, app):
    order_id = _order(app, _create_order(client, app, ("curriculum-review", 1)))["id"]
    missing = admin_client.patch(f"/api/admin/orders/{order_id}/payment-status", json={})
    assert missing.status_code == 422

    response = admin_client.patch(f"/api/admin/orders/{order_id}/payment-status", json={"paymentStatus": "paid"})
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["payment_status"] == "paid"
    assert data["paid_at"] is not None


def test_admin_order_listing_filters_and_stats(admin_client, client, app):
    first = _create_order(client, app, ("curriculum-review", 1))
    _create_order(client, app, ("strategic-assessment", 1))
    order_id = _order(app, first)["id"]
    admin_client.patch(f"/api/admin/orders/{order_id}/payment-status", json={"paymentStatus": "paid"})

    paid = admin_client.get("/api/admin/orders?paymentStatus=paid").get_json()
    assert [order["order_number"] for order in paid["data"]] == [first]
    assert paid["meta"]["pagination"]["total"] == 1

    search = admin_client.get(f"/api/admin/orders?search={first.lower()}").get_json()
    assert search["meta"]["pagination"]["total"] == 1

    assert admin_client.get("/api/admin/orders?status=bogus").status_code == 422

    stats = admin_client.get("/api/admin/orders/stats").get_json()["data"]
    assert stats["total"] == 2
    assert stats["paid"] == 1
    assert stats["total_revenue"] == 1800.0
    assert stats["pending_revenue"] == 3000.0


def test_admin_order_delete_and_bulk_delete(admin_client, client, app):
    ids = [_order(app, _create_order(client, app, ("curriculum-review", 1)))["id"] for _ in range(3)]
    single = admin_client.delete(f"/api/admin/orders/{ids[0]}")
    assert single.status_code == 200
    assert admin_client.get(f"/api/admin/orders/{ids[0]}").status_code == 404

    bulk = admin_client.post("/api/admin/orders/bulk-delete", json={"ids": [ids[1], ids[2], 424242]})
    assert bulk.status_code == 200
    assert bulk.get_json()["data"] == {"deleted": 2, "failed": 1}

    assert admin_client.post("/api/admin/orders/bulk-delete", json={"ids": []}).status_code == 422


def _stripe_event(event_type, stripe_object):
    return {"id": "evt_test", "type": event_type, "data": {"object": stripe_object}}


def test_checkout_completed_webhook_marks_order_paid(client, app, sent_emails):
    order_number = _create_order(client, app, ("curriculum-review", 1))
    order_id = _order(app, order_number)["id"]
    sent_emails.clear()

    event = _stripe_event(
        "checkout.session.completed",
        {"id": "cs_test_123", "payment_status": "paid", "metadata": {"orderId": str(order_id), "orderNumber": order_number}},
    )
    response = client.post("/api/webhooks/stripe", json=event)
    assert response.status_code == 200
    assert response.get_json() == {"received": True}

    order = _order(app, order_number)
    assert order["payment_status"] == "paid"
    assert order["status"] == "confirmed"
    assert order["stripe_session_id"] == "cs_test_123"
    assert len(sent_emails) == 1

    # Stripe retries deliveries; a second one changes nothing.
    client.post("/api/webhooks/stripe", json=event)
    assert len(sent_emails) == 1


def test_unpaid_checkout_session_is_ignored(client, app):
    order_number = _create_order(client, app, ("curriculum-review", 1))
    event = _stripe_event(
        "checkout.session.completed",
        {"id": "cs_test_456", "payment_status": "unpaid", "metadata": {"orderNumber": order_number}},
    )
    assert client.post("/api/webhooks/stripe", json=event).status_code == 200
    assert _order(app, order_number)["payment_status"] == "unpaid"


def test_charge_refunded_webhook_marks_order_refunded(client, app):
    order_number = _create_order(client, app, ("curriculum-review", 1))
    event = _stripe_event("charge.refunded", {"id": "ch_test", "metadata": {"orderNumber": order_number}})
    assert client.post("/api/webhooks/stripe", json=event).status_code == 200
    assert _order(app, order_number)["payment_status"] == "refunded"


def test_malformed_stripe_webhook_is_rejected(client):
    response = client.post("/api/webhooks/stripe", data="not json", content_type="application/json")
    assert response.status_code == 400
    assert response.get_json()["error"].startswith("Webhook Error:")

    no_type = client.post("/api/webhooks/stripe", json={"data": {}})
    assert no_type.status_code == 400


def test_stripe_webhook_signature_is_verified(tmp_path, monkeypatch):
    secret = "whsec_test_secret"
    app = build_test_app(tmp_path, monkeypatch, {"STRIPE_WEBHOOK_SECRET": secret})
    client = app.test_client()
    body = json.dumps(_stripe_event("payment_intent.payment_failed", {"id": "pi_test"}))

    unsigned = client.post("/api/webhooks/stripe", data=body, content_type="application/json")
    assert unsigned.status_code == 400

    forged = client.post(
        "/api/webhooks/stripe",
        data=body,
        content_type="application/json",
        headers={"Stripe-Signature": f"t={int(time.time())},v1={'0' * 64}"},
    )
    assert forged.status_code == 400

    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    signed = client.post(
        "/api/webhooks/stripe",
        data=body,
        content_type="application/json",
        headers={"Stripe-Signature": f"t={timestamp},v1={signature}"},
    )
    assert signed.status_code == 200


def test_generic_webhook_is_logged(client, app):
    response = client.post("/api/webhooks/generic/suitedash", json={"event": "contact.updated", "id": 7})
    assert response.status_code == 200
    batch = client.post("/api/webhooks/generic/sendgrid", json=[{"event": "delivered"}, {"event": "open"}])
    assert batch.status_code == 200

    with app.app_context():
        actions = {(log.provider, log.action) for log in IntegrationLog.query.all()}
    assert ("suitedash", "webhook:contact.updated") in actions
    assert ("sendgrid", "webhook:batch") in actions


def test_generic_webhook_rejects_unknown_provider(client):
    response = client.post("/api/webhooks/generic/acme", json={"event": "x"})
    assert response.status_code == 404
    assert response.get_json()["message"] == "Unknown webhook provider"
