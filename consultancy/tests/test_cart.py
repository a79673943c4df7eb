import json

import pytest

from consultancy.cart import CART_STORAGE_KEY, MAX_ITEM_QUANTITY, Cart
from consultancy.models import Order

from .conftest import service_id


def _item(item_id, price=100.0, title="Strategy Session"):
    return {"id": item_id, "title": title, "slug": f"service-{item_id}", "price_from": price}


def test_add_item_is_idempotent():
    storage = {}
    cart = Cart(storage)
    assert cart.add_item(_item(1)) is True
    assert cart.add_item(_item(1)) is False
    assert cart.total_items == 1
    assert json.loads(storage[CART_STORAGE_KEY])[0]["quantity"] == 1


def test_add_item_requires_an_id():
    with pytest.raises(ValueError):
        Cart({}).add_item({"title": "No id"})


def test_quantity_updates_and_totals():
    cart = Cart({})
    cart.add_item(_item(1, price=250.50))
    cart.add_item(_item(2, price=99.99))
    assert cart.update_quantity(1, 3) is True
    assert cart.total_items == 4
    assert cart.total_price == pytest.approx(851.49)
    assert cart.update_quantity(42, 2) is False


def test_quantity_is_capped():
    cart = Cart({})
    cart.add_item(_item(1))
    cart.update_quantity(1, 500)
    assert cart.items[0]["quantity"] == MAX_ITEM_QUANTITY


def test_zero_quantity_removes_item():
    cart = Cart({})
    cart.add_item(_item(1))
    cart.add_item(_item(2))
    assert cart.update_quantity(1, 0) is True
    assert [item["id"] for item in cart.items] == [2]


def test_remove_and_clear():
    storage = {}
    cart = Cart(storage)
    cart.add_item(_item(1))
    assert cart.remove_item(1) is True
    assert cart.remove_item(1) is False
    cart.add_item(_item(3))
    cart.clear()
    assert cart.is_empty
    assert CART_STORAGE_KEY not in storage


def test_cart_reloads_from_storage_and_drops_garbage():
    storage = {
        CART_STORAGE_KEY: json.dumps([
            _item(1, price=10),
            _item(1, price=10),
            {"title": "missing id"},
            "not a dict",
            {**_item(2, price=-5), "quantity": 2},
        ])
    }
    cart = Cart(storage)
    assert [item["id"] for item in cart.items] == [1, 2]
    assert cart.items[1]["price_from"] == 0.0
    assert cart.order_lines() == [{"serviceId": 1, "quantity": 1}, {"serviceId": 2, "quantity": 2}]


def test_corrupt_storage_yields_empty_cart():
    assert Cart({CART_STORAGE_KEY: "{not json"}).is_empty
    assert Cart({CART_STORAGE_KEY: json.dumps({"id": 1})}).is_empty


def test_cart_api_add_update_remove(client, app):
    strategic = service_id(app, "strategic-assessment")

    added = client.post("/api/cart/items", json={"service_id": strategic})
    assert added.status_code == 200
    assert added.get_json()["message"] == "Item added to cart"
    again = client.post("/api/cart/items", json={"serviceId": strategic})
    assert again.get_json()["message"] == "Item already in cart"

    updated = client.patch(f"/api/cart/items/{strategic}", json={"quantity": 2})
    assert updated.status_code == 200
    data = updated.get_json()["data"]
    assert data["total_items"] == 2
    assert data["total_price"] == 5000.0

    cart = client.get("/api/cart").get_json()["data"]
    assert cart["items"][0]["pillar_slug"] == "business-consultancy"

    removed = client.delete(f"/api/cart/items/{strategic}")
    assert removed.get_json()["data"]["is_empty"] is True
    assert client.delete(f"/api/cart/items/{strategic}").status_code == 404


def test_cart_api_rejects_subscriptions_and_unknown_services(client, app):
    retainer = service_id(app, "strategic-advisory-retainer")
    subscription = client.post("/api/cart/items", json={"service_id": retainer})
    assert subscription.status_code == 422

    missing = client.post("/api/cart/items", json={"service_id": 99999})
    assert missing.status_code == 404
    assert missing.get_json()["message"] == "Service not found"

    invalid = client.post("/api/cart/items", json={"service_id": "abc"})
    assert invalid.status_code == 422


def test_cart_clear(client, app):
    client.post("/api/cart/items", json={"service_id": service_id(app, "curriculum-review")})
    response = client.delete("/api/cart")
    assert response.get_json()["message"] == "Cart cleared"
    assert client.get("/api/cart").get_json()["data"]["is_empty"] is True


def test_checkout_empty_cart_is_rejected(client):
    response = client.post(
        "/api/cart/checkout",
        json={"customerName": "Jane Doe", "customerEmail": "jane@example.com"},
    )
    assert response.status_code == 400
    assert response.get_json()["message"] == "Cart is empty"


def test_checkout_creates_order_and_clears_cart(client, app):
    strategic = service_id(app, "strategic-assessment")
    review = service_id(app, "process-optimisation-review")
    client.post("/api/cart/items", json={"service_id": strategic})
    client.post("/api/cart/items", json={"service_id": review})
    client.patch(f"/api/cart/items/{review}", json={"quantity": 2})

    response = client.post(
        "/api/cart/checkout",
        json={"customerName": "Jane Doe", "customerEmail": "jane@example.com"},
    )
    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["orderNumber"].startswith("ORD-")
    assert data["total"] == 7320.0
    assert "checkout/success" in data["paymentUrl"]
    assert client.get("/api/cart").get_json()["data"]["is_empty"] is True

    with app.app_context():
        order = Order.query.filter_by(order_number=data["orderNumber"]).one()
        assert {item.slug: item.quantity for item in order.items} == {
            "strategic-assessment": 1,
            "process-optimisation-review": 2,
        }
