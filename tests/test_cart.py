import pytest

import cart
from errors import NotFoundError, ValidationError


@pytest.fixture
def alice(db, customer):
    return db["user"].find_one({"email": "alice@bookmail.com"})


def test_adding_same_book_twice_merges_rows(db, alice, make_book):
    book = make_book()
    row, created = cart.add_to_cart(db, alice, book["id"], 2)
    assert created is True
    row, created = cart.add_to_cart(db, alice, book["id"], 3)
    assert created is False
    assert row["quantity"] == 5
    assert db["orderlist"].count_documents({"user": str(alice["_id"])}) == 1


def test_add_rejects_bad_quantity(db, alice, make_book):
    book = make_book()
    for quantity in (None, 0, -2):
        with pytest.raises(ValidationError):
            cart.add_to_cart(db, alice, book["id"], quantity)


def test_add_unknown_book(db, alice):
    with pytest.raises(NotFoundError):
        cart.add_to_cart(db, alice, "6650f1f1f1f1f1f1f1f1f1f1", 1)


def test_list_cart_prices_sale_books_at_discount(db, alice, make_book):
    on_sale = make_book(title="Dune", tag="Sale", discountPrice=350.0)
    regular = make_book(title="Emma", price=250.0)
    cart.add_to_cart(db, alice, on_sale["id"], 2)
    cart.add_to_cart(db, alice, regular["id"], 1)

    listing = cart.list_cart(db, alice)
    prices = {item["book"]["title"]: item["unitPrice"] for item in listing["items"]}
    assert prices == {"Dune": 350.0, "Emma": 250.0}
    assert listing["subtotal"] == 950.0


def test_set_quantity_and_remove(db, alice, make_book):
    book = make_book()
    cart.add_to_cart(db, alice, book["id"], 1)
    assert cart.set_quantity(db, alice, book["id"], 4)["quantity"] == 4

    cart.remove_item(db, alice, book["id"])
    with pytest.raises(NotFoundError):
        cart.remove_item(db, alice, book["id"])
    with pytest.raises(NotFoundError):
        cart.set_quantity(db, alice, book["id"], 2)


def test_cart_endpoints(client, customer, other_customer, make_book):
    book = make_book()
    first = client.post("/api/orderlist/add", json={"book_id": book["id"], "quantity": 2}, headers=customer["headers"])
    assert first.status_code == 201
    second = client.post("/api/orderlist/add", json={"book_id": book["id"], "quantity": 3}, headers=customer["headers"])
    assert second.status_code == 200
    assert second.json()["orderList"]["quantity"] == 5

    mine = client.get("/api/orderlist", headers=customer["headers"]).json()
    assert [i["quantity"] for i in mine["items"]] == [5]
    assert client.get("/api/orderlist", headers=other_customer["headers"]).json()["items"] == []

    res = client.delete("/api/orderlist", headers=customer["headers"])
    assert res.json()["removed"] == 1


def test_cart_requires_token(client):
    res = client.get("/api/orderlist")
    assert res.status_code == 401
    assert res.json()["message"] == "Authorization token is required"
