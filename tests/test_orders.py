from datetime import datetime, timezone

import pytest

from conftest import auth, conditions_product, flat_product, fresh, make_user, variant_product
from errors import InsufficientStockError, ValidationError
from orders import confirm_payment, reserve_stock, resolve_lines
from schemas import Order, OrderItemIn, validate_document


def variant_item(product, quantity=1, color="noir"):
    return {
        "productId": str(product["_id"]),
        "quantity": quantity,
        "storage": "128",
        "condition": "etat_parfait",
        "color": color,
    }


def place(client, user, items, **extra):
    return client.post("/orders", json={"items": items, **extra}, headers=auth(user))


def test_order_reserves_stock_and_snapshots_price(client, db, user):
    product = variant_product(db, stock=2)
    res = place(client, user, [variant_item(product, quantity=2)])
    assert res.status_code == 201
    order = res.json()
    assert order["status"] == "pending"
    assert order["stockReserved"] is True
    assert order["totalAmount"] == 600
    assert order["items"][0]["price"] == 300
    assert order["items"][0]["color"] == "Noir"
    assert order["items"][0]["storage"] == "128"

    stored = fresh(db, product)
    assert stored["variants"]["128"]["etat_parfait"]["colors"][0]["stock"] == 0
    assert stored["soldCount"] == 2

    res = place(client, user, [variant_item(product, quantity=1)])
    assert res.status_code == 400
    assert "Insufficient stock" in res.json()["message"]


def test_order_total_includes_shipping_and_tax(client, db, user):
    product = flat_product(db, price=19.99, stock=10)
    res = place(client, user, [{"productId": str(product["_id"]), "quantity": 3}], shippingPrice=4.9, taxPrice=1.1)
    assert res.status_code == 201
    order = res.json()
    assert abs(order["totalAmount"] - (19.99 * 3 + 4.9 + 1.1)) <= 0.01
    assert order["items"][0]["condition"] is None



def order_doc(**fields):
    doc = {
        "user": "u1",
        "items": [{"product": "p1", "name": "Coque silicone", "quantity": 2, "price": 50}],
        "totalAmount": 100,
    }
    doc.update(fields)
    return doc


def test_order_total_tolerance():
    assert validate_document(Order, order_doc(totalAmount=100.009))["totalAmount"] == 100.009
    with pytest.raises(ValidationError):
        validate_document(Order, order_doc(totalAmount=100.02))
    with pytest.raises(ValidationError):
        validate_document(Order, order_doc(totalAmount=99.98))


@pytest.mark.parametrize("fields", [
    {"isPaid": True},
    {"paidAt": datetime.now(timezone.utc)},
    {"isPaid": True, "paidAt": datetime.now(timezone.utc), "isDelivered": True},
    {"deliveredAt": datetime.now(timezone.utc)},
])
def test_order_flag_pairs_must_match(fields):
    with pytest.raises(ValidationError):
        validate_document(Order, order_doc(**fields))


def test_legacy_condition_order(client, db, user):
    product = conditions_product(db)
    res = place(client, user, [{"productId": str(product["_id"]), "quantity": 2, "condition": "perfect", "color": "gris"}])
    assert res.status_code == 201
    item = res.json()["items"][0]
    assert (item["price"], item["condition"], item["color"], item["storage"]) == (329, "perfect", "Gris", None)
    assert fresh(db, product)["conditions"]["perfect"]["stock"] == 3


@pytest.mark.parametrize("item, status", [
    ({"storage": "128", "condition": "etat_parfait"}, 400),
    ({"storage": "128", "condition": "bon_etat", "color": "Noir"}, 400),
    ({"storage": "256", "condition": "etat_parfait", "color": "Noir"}, 400),
    ({"storage": "128", "condition": "etat_parfait", "color": "Violet"}, 400),
])
def test_invalid_selection_is_rejected(client, db, user, item, status):
    product = variant_product(db)
    res = place(client, user, [{"productId": str(product["_id"]), "quantity": 1, **item}])
    assert res.status_code == status
    assert res.json()["success"] is False
    assert fresh(db, product)["variants"]["128"]["etat_parfait"]["colors"][0]["stock"] == 2
    assert db["order"].count_documents({}) == 0


def test_unknown_product(client, user):
    res = place(client, user, [{"productId": "64b000000000000000000000", "quantity": 1}])
    assert res.status_code == 404
    res = place(client, user, [{"productId": "not-an-id", "quantity": 1}])
    assert res.status_code == 404


def test_failed_line_rolls_back_reserved_lines(db):
    phone = variant_product(db, stock=2)
    case = flat_product(db, stock=1)
    lines = resolve_lines(db["product"], [
        OrderItemIn(product_id=str(phone["_id"]), quantity=1, storage="128", condition="etat_parfait", color="Noir"),
        OrderItemIn(product_id=str(case["_id"]), quantity=1),
    ])
    # The case sells out between validation and reservation
    db["product"].update_one({"_id": case["_id"]}, {"$set": {"stock": 0}})

    with pytest.raises(InsufficientStockError):
        reserve_stock(db["product"], lines)
    stored = fresh(db, phone)
    assert stored["variants"]["128"]["etat_parfait"]["colors"][0]["stock"] == 2
    assert stored["soldCount"] == 0


def test_lifecycle(client, db, user, admin):
    product = variant_product(db, stock=2)
    order = place(client, user, [variant_item(product)]).json()
    oid = order["id"]

    res = client.put(f"/orders/{oid}/deliver", headers=auth(admin))
    assert res.status_code == 400

    res = client.put(f"/orders/{oid}/pay", json={"id": "PAY-1", "status": "COMPLETED"}, headers=auth(user))
    assert res.status_code == 200
    paid = res.json()
    assert paid["status"] == "paid"
    assert paid["isPaid"] is True and paid["paidAt"]
    # Stock was reserved at creation and is not taken again
    assert fresh(db, product)["variants"]["128"]["etat_parfait"]["colors"][0]["stock"] == 1

    assert client.put(f"/orders/{oid}/pay", headers=auth(user)).status_code == 400
    assert client.put(f"/orders/{oid}/ship", headers=auth(user)).status_code == 403
    assert client.put(f"/orders/{oid}/ship", headers=auth(admin)).json()["status"] == "shipped"

    delivered = client.put(f"/orders/{oid}/deliver", headers=auth(admin)).json()
    assert delivered["status"] == "delivered"
    assert delivered["isDelivered"] is True and delivered["deliveredAt"]
    assert client.put(f"/orders/{oid}/deliver", headers=auth(admin)).status_code == 400
    assert client.put(f"/orders/{oid}/cancel", headers=auth(user)).status_code == 400


def test_confirm_payment_is_idempotent(client, db, user):
    product = variant_product(db, stock=2)
    order = place(client, user, [variant_item(product)]).json()

    first, transitioned = confirm_payment(db, order["id"], "test")
    second, again = confirm_payment(db, order["id"], "test")
    assert transitioned and not again
    assert first == second
    stored = fresh(db, product)
    assert stored["variants"]["128"]["etat_parfait"]["colors"][0]["stock"] == 1
    assert stored["soldCount"] == 1


def test_cancel_releases_stock(client, db, user):
    product = variant_product(db, stock=2)
    oid = place(client, user, [variant_item(product, quantity=2)]).json()["id"]

    res = client.put(f"/orders/{oid}/cancel", headers=auth(user))
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    stored = fresh(db, product)
    assert stored["variants"]["128"]["etat_parfait"]["colors"][0]["stock"] == 2
    assert stored["soldCount"] == 0
    assert client.put(f"/orders/{oid}/pay", headers=auth(user)).status_code == 400


def test_delete_rules(client, db, user, admin):
    product = flat_product(db, stock=5)
    item = {"productId": str(product["_id"]), "quantity": 2}
    stranger = make_user(db, email="autre@example.com")

    oid = place(client, user, [item]).json()["id"]
    assert client.delete(f"/orders/{oid}", headers=auth(stranger)).status_code == 403
    assert client.delete(f"/orders/{oid}", headers=auth(user)).status_code == 200
    assert fresh(db, product)["stock"] == 5
    assert db["order"].count_documents({}) == 0

    oid = place(client, user, [item]).json()["id"]
    client.put(f"/orders/{oid}/pay", headers=auth(user))
    assert client.delete(f"/orders/{oid}", headers=auth(admin)).status_code == 400


def test_order_access_and_listing(client, db, user, admin):
    product = flat_product(db, stock=5)
    stranger = make_user(db, email="autre@example.com")
    oid = place(client, user, [{"productId": str(product["_id"]), "quantity": 1}]).json()["id"]

    assert client.get(f"/orders/{oid}", headers=auth(user)).status_code == 200
    assert client.get(f"/orders/{oid}", headers=auth(admin)).status_code == 200
    assert client.get(f"/orders/{oid}", headers=auth(stranger)).status_code == 403

    assert [o["id"] for o in client.get("/orders/my", headers=auth(user)).json()] == [oid]
    assert client.get("/orders/my", headers=auth(stranger)).json() == []

    assert client.get("/orders", headers=auth(user)).status_code == 403
    listing = client.get("/orders", params={"status": "pending"}, headers=auth(admin)).json()
    assert listing["total"] == 1
    assert listing["orders"][0]["id"] == oid
    assert client.get("/orders", params={"status": "paid"}, headers=auth(admin)).json()["total"] == 0
