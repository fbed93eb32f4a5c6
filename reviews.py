import logging
from typing import Any, Dict, List, Optional, Tuple

import pydantic
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from books import find_book, recompute_average_rating
from database import NEWEST_FIRST, create_document, get_documents, oid, serialize, utcnow
from errors import AuthError, ConflictError, NotFoundError, ValidationError
from schemas import COMPLETION_STATUS, Review

logger = logging.getLogger(__name__)


def validate_review(db: Database, book_id: str, email: str) -> bool:
    """True when `email` has a delivered order containing the book."""
    order = db["order"].find_one({
        "email": email.lower(),
        "status": COMPLETION_STATUS,
        "items.book": book_id,
    }, {"_id": 1})
    return order is not None


def _find_review(db: Database, review_id: str) -> Dict[str, Any]:
    review = db["review"].find_one({"_id": oid(review_id)})
    if not review:
        raise NotFoundError("Review not found.")
    return review


def _check_owner(review: Dict[str, Any], user: Dict[str, Any]) -> None:
    if user.get("role") == "admin":
        return
    if review.get("user") != str(user["_id"]):
        raise AuthError("You can only change your own reviews.", status_code=403)


def submit_review(
    db: Database,
    book_id: str,
    rating: float,
    comment: str,
    user: Dict[str, Any],
    order_id: Optional[str] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Create the user's review of a book, or update the one they already wrote.

    Returns the review and whether it was newly created.
    """
    book = find_book(db, book_id)
    email = user["email"]
    if not validate_review(db, book_id, email):
        raise AuthError("You can only review books from your delivered orders.", status_code=403)

    user_id = str(user["_id"])
    try:
        review = Review(book_id=book_id, user=user_id, email=email, rating=rating, comment=comment, order=order_id)
    except pydantic.ValidationError as exc:
        raise ValidationError("Invalid review", errors=[err["msg"] for err in exc.errors()])

    existing = db["review"].find_one({"user": user_id, "bookId": book_id})
    if existing:
        review_id = str(existing["_id"])
        changes: Dict[str, Any] = {"rating": review.rating, "comment": review.comment, "updatedAt": utcnow()}
        if order_id and not existing.get("order"):
            changes["order"] = order_id
        db["review"].update_one({"_id": existing["_id"]}, {"$set": changes})
    else:
        try:
            review_id = create_document(db, "review", review)
        except DuplicateKeyError:
            raise ConflictError("You have already reviewed this book.")
        db["book"].update_one({"_id": book["_id"]}, {"$addToSet": {"reviews": review_id}})
    average = recompute_average_rating(db, book_id)
    logger.info(
        "Review %s on book %s %s, average now %.2f",
        review_id, book_id, "updated" if existing else "created", average,
    )

    if order_id:
        db["order"].update_one(
            {"_id": oid(order_id), "email": email.lower(), "items.book": book_id},
            {"$set": {"items.$.isReviewed": True}},
        )
    return serialize(_find_review(db, review_id)), existing is None


def get_reviews(db: Database, book_id: str) -> List[Dict[str, Any]]:
    return [serialize(r) for r in get_documents(db, "review", {"bookId": book_id}, sort=NEWEST_FIRST)]


def get_all_reviews(db: Database) -> List[Dict[str, Any]]:
    return [serialize(r) for r in get_documents(db, "review", sort=NEWEST_FIRST)]


def get_user_book_review(db: Database, user_id: str, book_id: str) -> Optional[Dict[str, Any]]:
    return serialize(db["review"].find_one({"user": user_id, "bookId": book_id}))


def update_review(
    db: Database,
    review_id: str,
    user: Dict[str, Any],
    rating: Optional[float],
    comment: Optional[str],
) -> Dict[str, Any]:
    if rating is None or not comment:
        raise ValidationError("Rating and comment are required.")
    if not 0 <= rating <= 5:
        raise ValidationError("Rating must be between 0 and 5.")
    review = _find_review(db, review_id)
    _check_owner(review, user)
    db["review"].update_one(
        {"_id": review["_id"]},
        {"$set": {"rating": rating, "comment": comment, "updatedAt": utcnow()}},
    )
    recompute_average_rating(db, review["bookId"])
    return serialize(_find_review(db, review_id))


def delete_review(db: Database, review_id: str, user: Dict[str, Any]) -> None:
    review = _find_review(db, review_id)
    _check_owner(review, user)
    db["review"].delete_one({"_id": review["_id"]})
    db["book"].update_one({"_id": oid(review["bookId"])}, {"$pull": {"reviews": review_id}})
    recompute_average_rating(db, review["bookId"])
    logger.info("Deleted review %s on book %s", review_id, review["bookId"])
