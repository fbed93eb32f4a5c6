import pytest
from bson import ObjectId

import orders
import reviews
import users
from errors import AuthError


def deliver(db, user, book_id):
    doc = db["user"].find_one({"email": user["email"]})
    order = orders.create_order(db, doc, [{"book": book_id, "quantity": 1}], 100.0)
    orders.update_order_status(db, order["id"], "Delivered")
    return order


@pytest.fixture
def reviewers(db):
    created = []
    for name in ("carol", "dave", "erin"):
        user, _ = users.register_user(db, name, f"{name}@bookmail.com", "password1")
        created.append(db["user"].find_one({"_id": ObjectId(user["id"])}))
    return created


def test_average_rating_follows_reviews(db, make_book, reviewers):
    book = make_book()
    for user in reviewers:
        deliver(db, user, book["id"])

    expected = [4.0, 3.0, 11 / 3]
    submitted = []
    for user, rating, average in zip(reviewers, [4, 2, 5], expected):
        review, _ = reviews.submit_review(db, book["id"], rating, "Good read", user)
        submitted.append(review)
        assert db["book"].find_one({})["averageRating"] == pytest.approx(average)

    reviews.update_review(db, submitted[1]["id"], reviewers[1], 5, "Grew on me")
    assert db["book"].find_one({})["averageRating"] == pytest.approx(14 / 3)

    reviews.delete_review(db, submitted[0]["id"], reviewers[0])
    assert db["book"].find_one({})["averageRating"] == pytest.approx(5.0)
    assert len(db["book"].find_one({})["reviews"]) == 2


def test_validate_review_needs_delivered_purchase(db, make_book, customer):
    book = make_book()
    assert reviews.validate_review(db, book["id"], "alice@bookmail.com") is False

    doc = db["user"].find_one({"email": "alice@bookmail.com"})
    order = orders.create_order(db, doc, [{"book": book["id"], "quantity": 1}], 500.0)
    assert reviews.validate_review(db, book["id"], "alice@bookmail.com") is False

    orders.update_order_status(db, order["id"], "Delivered")
    assert reviews.validate_review(db, book["id"], "Alice@BookMail.com") is True
    assert reviews.validate_review(db, make_book(title="Other")["id"], "alice@bookmail.com") is False


def test_submit_without_purchase_is_forbidden(db, make_book, customer):
    book = make_book()
    doc = db["user"].find_one({"email": "alice@bookmail.com"})
    with pytest.raises(AuthError) as exc:
        reviews.submit_review(db, book["id"], 5, "Great", doc)
    assert exc.value.status_code == 403
    assert db["review"].count_documents({}) == 0


def test_only_owner_or_admin_edits_review(db, make_book, reviewers, admin):
    book = make_book()
    deliver(db, reviewers[0], book["id"])
    review, _ = reviews.submit_review(db, book["id"], 3, "Okay", reviewers[0])

    with pytest.raises(AuthError):
        reviews.update_review(db, review["id"], reviewers[1], 1, "Bad")

    admin_doc = db["user"].find_one({"role": "admin"})
    updated = reviews.update_review(db, review["id"], admin_doc, 4, "Moderated")
    assert updated["comment"] == "Moderated"


def test_second_submission_updates_the_same_review(db, make_book, reviewers):
    book = make_book()
    order = deliver(db, reviewers[0], book["id"])

    first, created = reviews.submit_review(db, book["id"], 2, "Slow start", reviewers[0])
    assert created is True
    second, created = reviews.submit_review(db, book["id"], 5, "Loved the ending", reviewers[0], order["id"])
    assert created is False

    assert second["id"] == first["id"]
    assert second["rating"] == 5
    assert second["comment"] == "Loved the ending"
    assert second["order"] == order["id"]
    assert db["review"].count_documents({"bookId": book["id"]}) == 1
    stored = db["book"].find_one({})
    assert len(stored["reviews"]) == 1
    assert stored["averageRating"] == pytest.approx(5.0)


# ---------------- API ----------------


def test_review_endpoints(client, db, make_book, customer):
    book = make_book()
    check = client.get(f"/api/reviews/validate-purchase/{book['id']}/alice@bookmail.com")
    assert check.json() == {"canReview": False}

    denied = client.post(f"/api/reviews/{book['id']}", json={"rating": 5, "comment": "Loved it"}, headers=customer["headers"])
    assert denied.status_code == 403

    order = deliver(db, db["user"].find_one({"email": "alice@bookmail.com"}), book["id"])
    res = client.post(
        f"/api/reviews/{book['id']}",
        json={"rating": 5, "comment": "Loved it", "orderId": order["id"]},
        headers=customer["headers"],
    )
    assert res.status_code == 201
    review = res.json()["review"]
    assert review["bookId"] == book["id"]

    listed = client.get(f"/api/reviews/{book['id']}").json()["reviews"]
    assert [r["id"] for r in listed] == [review["id"]]

    detail = client.get(f"/api/books/{book['id']}").json()["book"]
    assert detail["averageRating"] == 5
    assert detail["reviews"][0]["comment"] == "Loved it"

    mine = client.get(f"/api/reviews/user/{customer['user']['id']}/book/{book['id']}", headers=customer["headers"])
    assert mine.json()["exists"] is True

    again = client.post(f"/api/reviews/{book['id']}", json={"rating": 3, "comment": "Rereading"}, headers=customer["headers"])
    assert again.status_code == 200
    assert again.json()["updated"] is True
    assert again.json()["review"]["id"] == review["id"]
    assert len(client.get(f"/api/reviews/{book['id']}").json()["reviews"]) == 1


def test_update_review_requires_rating_and_comment(client, db, make_book, customer):
    book = make_book()
    deliver(db, db["user"].find_one({"email": "alice@bookmail.com"}), book["id"])
    review = client.post(
        f"/api/reviews/{book['id']}", json={"rating": 4, "comment": "Nice"}, headers=customer["headers"]
    ).json()["review"]

    res = client.put(f"/api/reviews/{review['id']}", json={"rating": 3}, headers=customer["headers"])
    assert res.status_code == 400
    assert res.json()["message"] == "Rating and comment are required."
