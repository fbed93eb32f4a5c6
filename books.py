import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import pydantic
from pymongo.database import Database

import outbox
from database import NEWEST_FIRST, create_document, get_documents, oid, serialize, utcnow
from errors import NotFoundError, ValidationError
from schemas import Book

logger = logging.getLogger(__name__)

# Server-managed fields a client update may not overwrite
PROTECTED_FIELDS = ("_id", "averageRating", "reviews", "createdAt", "updatedAt")

# Stands in for images that are not uploaded yet
IMAGE_PLACEHOLDER = "https://placeholder.invalid/cover.jpg"


def validate_book(data: Dict[str, Any]) -> Book:
    try:
        return Book(**data)
    except pydantic.ValidationError as exc:
        messages = [err["msg"].removeprefix("Value error, ") for err in exc.errors()]
        raise ValidationError("Validation failed!", errors=messages)


def find_book(db: Database, book_id: str) -> Dict[str, Any]:
    book = db["book"].find_one({"_id": oid(book_id)})
    if not book:
        raise NotFoundError("Book not found!")
    return book


def check_book_fields(data: Dict[str, Any]) -> None:
    """Validate a new book's fields before its images are uploaded."""
    fields = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
    validate_book({**fields, "coverImage": [IMAGE_PLACEHOLDER]})


def create_book(db: Database, data: Dict[str, Any], image_urls: List[str]) -> Dict[str, Any]:
    if not image_urls:
        raise ValidationError("At least one image is required!")
    fields = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
    book = validate_book({**fields, "coverImage": image_urls})
    book_id = create_document(db, "book", book)
    logger.info("Created book %s (%s)", book_id, book.title)
    if book.tag == "Sale":
        outbox.record_event(db, outbox.book_sale_key(book_id), "BOOK_SALE", {"bookId": book_id})
    return serialize(find_book(db, book_id))


def list_books(
    db: Database,
    category: Optional[str] = None,
    tag: Optional[str] = None,
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
    search: Optional[str] = None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if category:
        query["category"] = category
    if tag:
        query["tag"] = tag
    price_filter = {}
    if price_min is not None:
        price_filter["$gte"] = float(price_min)
    if price_max is not None:
        price_filter["$lte"] = float(price_max)
    if price_filter:
        query["price"] = price_filter
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"title": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    return [serialize(d) for d in get_documents(db, "book", query, sort=NEWEST_FIRST)]


def get_book(db: Database, book_id: str) -> Dict[str, Any]:
    """Book with its reviews expanded in place of the id list."""
    book = serialize(find_book(db, book_id))
    review_ids = [oid(r) for r in book.get("reviews", [])]
    reviews = db["review"].find({"_id": {"$in": review_ids}}).sort(NEWEST_FIRST)
    book["reviews"] = [serialize(r) for r in reviews]
    return book


def _merge(existing: Dict[str, Any], updates: Dict[str, Any], image_urls: Optional[List[str]]) -> Dict[str, Any]:
    merged = {k: v for k, v in existing.items() if k not in ("_id", "createdAt", "updatedAt")}
    merged.update({k: v for k, v in updates.items() if k not in PROTECTED_FIELDS})
    if updates.get("tag") not in (None, "Sale") and "discountPrice" not in updates:
        merged["discountPrice"] = None
    if image_urls:
        merged["coverImage"] = image_urls
    return merged


def check_book_update(db: Database, book_id: str, updates: Dict[str, Any], with_images: bool = False) -> None:
    """Validate an edit against the stored book before new images are uploaded."""
    existing = find_book(db, book_id)
    validate_book(_merge(existing, updates, [IMAGE_PLACEHOLDER] if with_images else None))


def update_book(
    db: Database,
    book_id: str,
    updates: Dict[str, Any],
    image_urls: Optional[List[str]] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Apply `updates` and validate the merged document.

    A key present with value None clears that field. Moving the tag off Sale
    without sending a discountPrice drops the stored one. New images replace
    the old set. Returns the updated book and whether it just left the Sale tag.
    """
    existing = find_book(db, book_id)
    book = validate_book(_merge(existing, updates, image_urls))

    doc = book.model_dump(by_alias=True)
    doc["updatedAt"] = utcnow()
    db["book"].update_one({"_id": existing["_id"]}, {"$set": doc})

    was_on_sale = existing.get("tag") == "Sale"
    sale_ended = was_on_sale and book.tag != "Sale"
    if book.tag == "Sale" and not was_on_sale:
        outbox.record_event(db, outbox.book_sale_key(book_id), "BOOK_SALE", {"bookId": book_id})
    elif sale_ended:
        outbox.forget_event(db, outbox.book_sale_key(book_id))
    return serialize(find_book(db, book_id)), sale_ended


def delete_book(db: Database, book_id: str) -> Dict[str, Any]:
    book = db["book"].find_one_and_delete({"_id": oid(book_id)})
    if not book:
        raise NotFoundError("Book not found!")
    db["orderlist"].delete_many({"product": book_id})
    logger.info("Deleted book %s", book_id)
    return serialize(book)


def recompute_average_rating(db: Database, book_id: str) -> float:
    """Derive averageRating from the stored reviews rather than a running mean."""
    rows = list(db["review"].aggregate([
        {"$match": {"bookId": book_id}},
        {"$group": {"_id": None, "average": {"$avg": "$rating"}}},
    ]))
    average = float(rows[0]["average"]) if rows and rows[0]["average"] is not None else 0.0
    db["book"].update_one({"_id": oid(book_id)}, {"$set": {"averageRating": average, "updatedAt": utcnow()}})
    return average
