"""
Order lifecycle

Orders move Pending -> Processing -> Shipping -> Delivered. Each status change
records an outbox event; reaching the completion status flips
`notificationSent` once and records the single "Order Completed" event.
"""

import logging
from typing import Any, Dict, List, Optional

import pydantic
from pymongo import ReturnDocument
from pymongo.database import Database

import outbox
from database import NEWEST_FIRST, create_document, get_documents, oid, serialize, utcnow
from errors import NotFoundError, ValidationError
from schemas import COMPLETION_STATUS, ORDER_STATUSES, Order

logger = logging.getLogger(__name__)

BOOK_SUMMARY_FIELDS = {"title": 1, "author": 1, "price": 1, "discountPrice": 1, "tag": 1, "coverImage": 1}


def unit_price(book: Dict[str, Any]) -> float:
    if book.get("tag") == "Sale" and book.get("discountPrice"):
        return float(book["discountPrice"])
    return float(book.get("price", 0))


def _load_books(db: Database, book_ids: List[str], projection: Optional[Dict[str, int]] = None) -> Dict[str, Dict[str, Any]]:
    ids = [oid(b) for b in set(book_ids)]
    return {str(b["_id"]): b for b in db["book"].find({"_id": {"$in": ids}}, projection)}


def populate_items(db: Database, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace line item book ids with book summaries (ids kept when a book is gone)."""
    book_ids = [item["book"] for order in orders for item in order.get("items", [])]
    books = _load_books(db, book_ids, BOOK_SUMMARY_FIELDS) if book_ids else {}
    out = []
    for order in orders:
        order = serialize(order)
        items = []
        for item in order.get("items", []):
            book = books.get(item["book"])
            items.append({**item, "book": serialize(book) if book else item["book"]})
        order["items"] = items
        out.append(order)
    return out


def _find_order(db: Database, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFoundError("Order not found")
    return order


def create_order(
    db: Database,
    user: Dict[str, Any],
    items: Optional[List[Dict[str, Any]]],
    total_amount: Optional[float],
    name: Optional[str] = None,
    email: Optional[str] = None,
    address: Optional[Dict[str, Any]] = None,
    phone: Optional[str] = None,
    payment_method: str = "COD",
) -> Dict[str, Any]:
    if not items or total_amount is None:
        raise ValidationError("Items and totalAmount are required")

    missing = {str(i.get("book")) for i in items} - set(_load_books(db, [str(i.get("book")) for i in items], {"_id": 1}))
    if missing:
        raise NotFoundError(f"Book not found: {', '.join(sorted(missing))}")

    try:
        order = Order(
            user=str(user["_id"]),
            name=name or user.get("username"),
            email=(email or user["email"]).lower(),
            address=address or user.get("address") or {},
            phone=phone or user.get("phone"),
            items=items,
            payment_method=payment_method,
            total_amount=total_amount,
        )
    except pydantic.ValidationError as exc:
        raise ValidationError("Invalid order", errors=[err["msg"] for err in exc.errors()])

    order_id = create_document(db, "order", order)
    logger.info("Order %s placed by user %s (%d items)", order_id, order.user, len(order.items))
    outbox.record_event(db, outbox.order_placed_key(order_id), "ORDER_PLACED", {"orderId": order_id})
    return serialize(_find_order(db, order_id))


def checkout(db: Database, user: Dict[str, Any], **shipping) -> Dict[str, Any]:
    """Turn the user's cart into an order priced from the current catalog."""
    user_id = str(user["_id"])
    rows = list(db["orderlist"].find({"user": user_id}))
    if not rows:
        raise ValidationError("Cart is empty")
    books = _load_books(db, [r["product"] for r in rows])
    missing = [r["product"] for r in rows if r["product"] not in books]
    if missing:
        raise NotFoundError(f"Book not found: {', '.join(missing)}")

    items = [{"book": r["product"], "quantity": r["quantity"]} for r in rows]
    total = round(sum(unit_price(books[r["product"]]) * r["quantity"] for r in rows), 2)
    order = create_order(db, user, items, total, **shipping)
    db["orderlist"].delete_many({"user": user_id})
    return order


def update_order_status(db: Database, order_id: str, new_status: str) -> Dict[str, Any]:
    if new_status not in ORDER_STATUSES:
        raise ValidationError("Invalid status")
    _id = oid(order_id)
    now = utcnow()
    previous = db["order"].find_one_and_update(
        {"_id": _id},
        {"$set": {"status": new_status, "updatedAt": now}},
        return_document=ReturnDocument.BEFORE,
    )
    if not previous:
        raise NotFoundError("Order not found")

    if new_status == "Delivered":
        # only the first delivery is stamped
        db["order"].update_one({"_id": _id, "deliveredAt": None}, {"$set": {"deliveredAt": now}})

    if new_status == COMPLETION_STATUS:
        result = db["order"].update_one(
            {"_id": _id, "notificationSent": {"$ne": True}},
            {"$set": {"notificationSent": True}},
        )
        if result.modified_count:
            outbox.record_event(db, outbox.order_completed_key(order_id), "ORDER_COMPLETED", {"orderId": order_id})
    elif previous.get("status") != new_status:
        outbox.record_event(
            db,
            outbox.order_status_key(order_id, new_status),
            "ORDER_STATUS_UPDATE",
            {"orderId": order_id, "status": new_status},
        )

    logger.info("Order %s status %s -> %s", order_id, previous.get("status"), new_status)
    return serialize(_find_order(db, order_id))


def get_order(db: Database, order_id: str) -> Dict[str, Any]:
    return populate_items(db, [_find_order(db, order_id)])[0]


def get_user_orders(db: Database, user_id: str) -> List[Dict[str, Any]]:
    return populate_items(db, get_documents(db, "order", {"user": user_id}, sort=NEWEST_FIRST))


def fetch_all_orders(db: Database) -> List[Dict[str, Any]]:
    return [serialize(o) for o in get_documents(db, "order", sort=NEWEST_FIRST)]


def get_orders_by_email(db: Database, email: str) -> List[Dict[str, Any]]:
    return [serialize(o) for o in get_documents(db, "order", {"email": email.lower()}, sort=NEWEST_FIRST)]


def assign_courier(db: Database, order_id: str, courier_id: str) -> Dict[str, Any]:
    courier = db["user"].find_one({"_id": oid(courier_id)})
    if not courier or courier.get("role") != "courier":
        raise ValidationError("Assigned user is not a courier")
    result = db["order"].update_one(
        {"_id": oid(order_id)},
        {"$set": {"courier": courier_id, "updatedAt": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("Order not found")
    return serialize(_find_order(db, order_id))


def delete_order(db: Database, order_id: str) -> None:
    result = db["order"].delete_one({"_id": oid(order_id)})
    if result.deleted_count == 0:
        raise NotFoundError("Order not found")
    logger.info("Deleted order %s", order_id)
