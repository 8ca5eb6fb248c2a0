import pytest

from best_sellers import add_best_seller, get_best_sellers, remove_best_seller, update_best_seller_order
from conftest import auth, flat_product
from errors import ConflictError


def catalog(db, count):
    return [flat_product(db, name=f"Produit {i}", soldCount=i * 10) for i in range(1, count + 1)]


def pinned_slots(db):
    docs = db["product"].find({"isBestSeller": True})
    return sorted(d["bestSellerOrder"] for d in docs)


def test_automatic_mode_uses_sold_count(db):
    products = catalog(db, 6)
    result, mode = get_best_sellers(db["product"])
    assert mode == "automatic"
    assert [p["name"] for p in result] == ["Produit 6", "Produit 5", "Produit 4", "Produit 3"]
    assert len(products) == 6


def test_pinned_product_keeps_its_slot(db):
    others = catalog(db, 9)
    pinned = flat_product(db, name="Coup de coeur", soldCount=0, isBestSeller=True, bestSellerOrder=2)

    result, mode = get_best_sellers(db["product"])
    assert mode == "hybrid"
    assert [p["_id"] for p in result] == [others[8]["_id"], pinned["_id"], others[7]["_id"], others[6]["_id"]]


def test_small_catalog_returns_what_exists(db):
    catalog(db, 2)
    result, _ = get_best_sellers(db["product"])
    assert len(result) == 2


def test_add_assigns_lowest_free_slot_and_caps_at_four(db):
    products = catalog(db, 5)
    slots = [add_best_seller(db["product"], p["_id"])["bestSellerOrder"] for p in products[:4]]
    assert slots == [1, 2, 3, 4]

    with pytest.raises(ConflictError):
        add_best_seller(db["product"], products[4]["_id"])

    remove_best_seller(db["product"], products[1]["_id"])
    assert pinned_slots(db) == [1, 3, 4]
    assert add_best_seller(db["product"], products[4]["_id"])["bestSellerOrder"] == 2
    assert pinned_slots(db) == [1, 2, 3, 4]


def test_adding_twice_is_a_no_op(db):
    product = catalog(db, 1)[0]
    add_best_seller(db["product"], product["_id"])
    assert add_best_seller(db["product"], product["_id"])["bestSellerOrder"] == 1
    assert pinned_slots(db) == [1]


def test_reorder_swaps_slots(db):
    a, b, c = catalog(db, 3)
    for p in (a, b, c):
        add_best_seller(db["product"], p["_id"])

    moved = update_best_seller_order(db["product"], c["_id"], 1)
    assert moved["bestSellerOrder"] == 1
    assert db["product"].find_one({"_id": a["_id"]})["bestSellerOrder"] == 3
    assert pinned_slots(db) == [1, 2, 3]

    update_best_seller_order(db["product"], b["_id"], 4)
    assert pinned_slots(db) == [1, 3, 4]


def test_reorder_of_slotless_pin_gives_holder_a_free_slot(db):
    a, b = catalog(db, 2)
    add_best_seller(db["product"], a["_id"])
    add_best_seller(db["product"], b["_id"])
    legacy = flat_product(db, name="Ancien favori", isBestSeller=True, bestSellerOrder=None)

    moved = update_best_seller_order(db["product"], legacy["_id"], 1)
    assert moved["bestSellerOrder"] == 1
    assert db["product"].find_one({"_id": a["_id"]})["bestSellerOrder"] == 3
    assert pinned_slots(db) == [1, 2, 3]


def test_reorder_requires_a_best_seller(db):
    product = catalog(db, 1)[0]
    with pytest.raises(ConflictError):
        update_best_seller_order(db["product"], product["_id"], 1)


def test_remove_clears_both_fields(db):
    product = catalog(db, 1)[0]
    add_best_seller(db["product"], product["_id"])
    removed = remove_best_seller(db["product"], product["_id"])
    assert removed["isBestSeller"] is False
    assert removed["bestSellerOrder"] is None


def test_best_seller_routes(client, db, user, admin):
    products = catalog(db, 5)
    pid = str(products[0]["_id"])

    assert client.put(f"/products/best-sellers/add/{pid}", headers=auth(user)).status_code == 403
    res = client.put(f"/products/best-sellers/add/{pid}", headers=auth(admin))
    assert res.status_code == 200
    assert res.json()["bestSellerOrder"] == 1

    res = client.put(f"/products/best-sellers/order/{pid}", json={"order": 3}, headers=auth(admin))
    assert res.json()["bestSellerOrder"] == 3
    assert client.put(f"/products/best-sellers/order/{pid}", json={"order": 5}, headers=auth(admin)).status_code == 422

    listing = client.get("/products/best-sellers/list").json()
    assert listing["mode"] == "hybrid"
    assert listing["count"] == 4
    assert listing["products"][2]["id"] == pid
    assert "displayPrice" in listing["products"][0]

    assert client.put(f"/products/best-sellers/remove/{pid}", headers=auth(admin)).json()["isBestSeller"] is False
    assert client.get("/products/best-sellers/list").json()["mode"] == "automatic"
