from datetime import datetime

import pytest
from bson import ObjectId

from database import get_db
from orders import (
    OrderTransitionError,
    apply_status_change,
    can_transition,
    generate_order_number,
    insert_order,
    is_delivered_status,
)

CHECKOUT = {"delivery_name": "Alice A", "delivery_address": "Bole Road 12, Addis Ababa", "phone": "+251911000000"}


def _fill_cart(client, headers, product, quantity=2, size="M"):
    body = {"product_id": str(product["_id"]), "size": size, "color": "black", "quantity": quantity}
    client.post("/api/cart", json=body, headers=headers)


def _checkout(client, headers, **overrides):
    return client.post("/api/checkout", json={**CHECKOUT, **overrides}, headers=headers)


def test_generate_order_number():
    assert generate_order_number(datetime(2025, 3, 7), 4) == "ORD-20250307-004"
    assert generate_order_number(datetime(2025, 12, 31), 123) == "ORD-20251231-123"


@pytest.mark.parametrize("current,new,allowed", [
    ("Pending", "Accepted", True),
    ("Pending", "Delivered", True),
    ("Accepted", "Pending", False),
    ("Out for Delivery", "In Printing", False),
    ("In Printing", "Cancelled", True),
    ("Delivered", "Cancelled", False),
    ("Cancelled", "Pending", False),
    ("Accepted", "Accepted", True),
])
def test_can_transition(current, new, allowed):
    assert can_transition(current, new) is allowed


def test_is_delivered_status():
    assert is_delivered_status("Delivered")
    assert is_delivered_status(" completed ")
    assert not is_delivered_status("Out for Delivery")
    assert not is_delivered_status(None)


def test_checkout_creates_order(client, user, user_headers, make_product, mailer):
    tee = make_product("Tee", base_price=20)
    hoodie = make_product("Hoodie", base_price=45.5)
    _fill_cart(client, user_headers, tee, quantity=2)
    _fill_cart(client, user_headers, hoodie, quantity=1)

    res = _checkout(client, user_headers)
    assert res.status_code == 201
    body = res.json()
    assert body["order_number"].startswith("ORD-")
    assert body["order_number"].endswith("-000")
    assert body["total"] == 85.5
    assert body["payment_method"] == "stripe"

    order = get_db()["order"].find_one({"_id": ObjectId(body["order_id"])})
    assert order["status"] == "Pending"
    assert order["payment_status"] == "unpaid"
    assert order["email"] == user["email"]
    assert order["subtotal"] == order["total"] == 85.5
    assert {i["name"]: i["subtotal"] for i in order["items"]} == {"Tee": 40.0, "Hoodie": 45.5}
    assert [h["status"] for h in order["status_history"]] == ["Pending"]

    assert get_db()["product"].find_one({"_id": tee["_id"]})["sales_count"] == 2
    assert get_db()["product"].find_one({"_id": hoodie["_id"]})["sales_count"] == 1
    assert client.get("/api/cart", headers=user_headers).json() == {"items": []}
    assert mailer.subjects() == [f"Order Placed - {body['order_number']}"]


def test_checkout_snapshots_primary_image(client, user_headers, product):
    get_db()["product"].update_one({"_id": product["_id"]}, {"$set": {"images": [
        {"url": "https://img.example.com/back.jpg", "alt": "Back", "is_primary": False},
        {"url": "https://img.example.com/front.jpg", "alt": "Front", "is_primary": True},
    ]}})
    _fill_cart(client, user_headers, product)
    order_id = _checkout(client, user_headers).json()["order_id"]
    order = get_db()["order"].find_one({"_id": ObjectId(order_id)})
    assert order["items"][0]["image_url"] == "https://img.example.com/front.jpg"


def test_checkout_sequence_increments(client, user_headers, product):
    numbers = []
    for _ in range(3):
        _fill_cart(client, user_headers, product)
        numbers.append(_checkout(client, user_headers).json()["order_number"])
    assert [n[-3:] for n in numbers] == ["000", "001", "002"]
    assert len(set(numbers)) == 3


def test_insert_order_skips_taken_numbers(user):
    today = generate_order_number()[:-4]
    get_db()["order"].insert_one({"order_number": f"{today}-001"})
    fields = {
        "user_id": user["id"],
        "items": [],
        "delivery_address": "Somewhere 1",
        "phone": "12345",
        "email": user["email"],
        "subtotal": 0,
        "total": 0,
    }
    first = insert_order(fields)
    assert first["order_number"] == f"{today}-002"
    second = insert_order(fields)
    assert second["order_number"] == f"{today}-003"


def test_checkout_empty_cart(client, user_headers):
    res = _checkout(client, user_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Cart is empty"


def test_checkout_unavailable_product(client, user_headers, product):
    _fill_cart(client, user_headers, product)
    get_db()["product"].update_one({"_id": product["_id"]}, {"$set": {"is_active": False}})
    res = _checkout(client, user_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Some items are unavailable"


def test_checkout_validation(client, user_headers, product):
    _fill_cart(client, user_headers, product)
    assert _checkout(client, user_headers, delivery_address="abc").status_code == 422
    assert _checkout(client, user_headers, payment_method="bitcoin").status_code == 422


def test_list_orders_marks_needs_review(client, user_headers, product):
    _fill_cart(client, user_headers, product)
    order_id = _checkout(client, user_headers).json()["order_id"]

    items = client.get("/api/orders", headers=user_headers).json()["orders"][0]["items"]
    assert items[0]["needs_review"] is False
    assert items[0]["product_slug"] == product["slug"]

    get_db()["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": "Delivered"}})
    items = client.get("/api/orders", headers=user_headers).json()["orders"][0]["items"]
    assert items[0]["needs_review"] is True

    client.post(f"/api/products/{product['_id']}/rating", json={"rating": 5}, headers=user_headers)
    items = client.get("/api/orders", headers=user_headers).json()["orders"][0]["items"]
    assert items[0]["needs_review"] is False


def test_get_order_by_id_or_number(client, user_headers, make_user, auth_headers, product):
    _fill_cart(client, user_headers, product)
    created = _checkout(client, user_headers).json()

    assert client.get(f"/api/orders/{created['order_id']}", headers=user_headers).status_code == 200
    res = client.get(f"/api/orders/{created['order_number']}", headers=user_headers)
    assert res.json()["order"]["id"] == created["order_id"]

    bob = make_user(email="bob@example.com")
    assert client.get(f"/api/orders/{created['order_id']}", headers=auth_headers(bob)).status_code == 404


def test_cancel_pending_order(client, user_headers, product, mailer):
    _fill_cart(client, user_headers, product)
    created = _checkout(client, user_headers).json()
    res = client.post(f"/api/orders/{created['order_id']}/cancel", headers=user_headers)
    assert res.status_code == 200
    assert res.json()["order"]["status"] == "Cancelled"
    assert f"Order Cancelled - {created['order_number']}" in mailer.subjects()

    assert client.post(f"/api/orders/{created['order_id']}/cancel", headers=user_headers).status_code == 409


def test_cancel_accepted_order_conflicts(client, user_headers, product):
    _fill_cart(client, user_headers, product)
    created = _checkout(client, user_headers).json()
    get_db()["order"].update_one({"_id": ObjectId(created["order_id"])}, {"$set": {"status": "Accepted"}})
    assert client.post(f"/api/orders/{created['order_id']}/cancel", headers=user_headers).status_code == 409


def test_apply_status_change_records_history_and_emails(client, user_headers, product, mailer):
    _fill_cart(client, user_headers, product)
    created = _checkout(client, user_headers).json()
    order = get_db()["order"].find_one({"_id": ObjectId(created["order_id"])})

    order = apply_status_change(order, "Accepted", "admin-1")
    order = apply_status_change(order, "Out for Delivery", "admin-1")
    assert [h["status"] for h in order["status_history"]] == ["Pending", "Accepted", "Out for Delivery"]
    assert order["status_history"][-1]["changed_by"] == "admin-1"
    assert mailer.subjects()[-2:] == [
        f"Order Accepted - {created['order_number']}",
        f"Out for Delivery - {created['order_number']}",
    ]

    with pytest.raises(OrderTransitionError):
        apply_status_change(order, "Accepted", "admin-1")


def test_apply_status_change_detects_stale_order(client, user_headers, product):
    _fill_cart(client, user_headers, product)
    created = _checkout(client, user_headers).json()
    stale = get_db()["order"].find_one({"_id": ObjectId(created["order_id"])})
    apply_status_change(dict(stale), "Accepted", "admin-1")
    with pytest.raises(OrderTransitionError):
        apply_status_change(stale, "Cancelled", "admin-2")
