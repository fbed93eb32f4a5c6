"""
OrderList (cart)

One row per (user, book). Adding a book that is already in the cart bumps
its quantity with an atomic upsert instead of inserting a second row.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from books import find_book
from database import oid, serialize, utcnow
from errors import NotFoundError, ValidationError
from orders import unit_price

logger = logging.getLogger(__name__)


def _increment(db: Database, user_id: str, book_id: str, quantity: int, upsert: bool):
    now = utcnow()
    return db["orderlist"].update_one(
        {"user": user_id, "product": book_id},
        {
            "$inc": {"quantity": quantity},
            "$set": {"updatedAt": now},
            "$setOnInsert": {"addedAt": now, "createdAt": now},
        },
        upsert=upsert,
    )


def add_to_cart(db: Database, user: Dict[str, Any], book_id: Optional[str], quantity: Optional[int]) -> Tuple[Dict[str, Any], bool]:
    """Returns the cart row and whether it was newly created."""
    if not book_id or quantity is None or quantity <= 0:
        raise ValidationError("Book ID and valid quantity are required.")
    find_book(db, book_id)
    user_id = str(user["_id"])
    try:
        result = _increment(db, user_id, book_id, quantity, upsert=True)
        created = result.upserted_id is not None
    except DuplicateKeyError:
        # lost an insert race to a concurrent add; the row exists now
        _increment(db, user_id, book_id, quantity, upsert=False)
        created = False
    row = db["orderlist"].find_one({"user": user_id, "product": book_id})
    logger.debug("Cart %s: book %s quantity %s", user_id, book_id, row["quantity"])
    return serialize(row), created


def list_cart(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    rows = list(db["orderlist"].find({"user": str(user["_id"])}).sort("addedAt", -1))
    ids = [oid(r["product"]) for r in rows]
    books = {str(b["_id"]): b for b in db["book"].find({"_id": {"$in": ids}})}
    items = []
    subtotal = 0.0
    for row in rows:
        book = books.get(row["product"])
        item = serialize(row)
        if book:
            price = unit_price(book)
            item["book"] = serialize(book)
            item["unitPrice"] = price
            subtotal += price * row["quantity"]
        items.append(item)
    return {"items": items, "subtotal": round(subtotal, 2)}


def set_quantity(db: Database, user: Dict[str, Any], book_id: str, quantity: Optional[int]) -> Dict[str, Any]:
    if quantity is None or quantity <= 0:
        raise ValidationError("Quantity must be at least 1.")
    user_id = str(user["_id"])
    result = db["orderlist"].update_one(
        {"user": user_id, "product": book_id},
        {"$set": {"quantity": quantity, "updatedAt": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Book is not in the cart.")
    return serialize(db["orderlist"].find_one({"user": user_id, "product": book_id}))


def remove_item(db: Database, user: Dict[str, Any], book_id: str) -> None:
    result = db["orderlist"].delete_one({"user": str(user["_id"]), "product": book_id})
    if result.deleted_count == 0:
        raise NotFoundError("Book is not in the cart.")


def clear_cart(db: Database, user: Dict[str, Any]) -> int:
    return db["orderlist"].delete_many({"user": str(user["_id"])}).deleted_count
