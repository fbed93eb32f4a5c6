"""
Notification outbox

Controllers record an event once, keyed for idempotency, next to the state
change that caused it. `dispatch_pending` consumes pending events and hands
them to the NotificationDispatcher, so a retried request or a second drain
never produces a second event for the same key.
"""

import logging
from typing import Any, Dict, Iterable

from pymongo import ASCENDING, ReturnDocument
from pymongo.database import Database

from database import oid, utcnow
from notifications import NotificationDispatcher
from schemas import OutboxEvent

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


def order_placed_key(order_id: str) -> str:
    return f"order:{order_id}:placed"


def order_status_key(order_id: str, status: str) -> str:
    return f"order:{order_id}:status:{status}"


def order_completed_key(order_id: str) -> str:
    return f"order:{order_id}:completed"


def book_sale_key(book_id: str) -> str:
    return f"book:{book_id}:sale"


def record_event(db: Database, key: str, type: str, payload: Dict[str, Any]) -> bool:
    """Store an event unless one with the same key exists. True if stored."""
    doc = OutboxEvent(key=key, type=type, payload=payload).model_dump(by_alias=True)
    doc.pop("key")
    now = utcnow()
    doc["createdAt"] = now
    doc["updatedAt"] = now
    result = db["outbox"].update_one({"key": key}, {"$setOnInsert": doc}, upsert=True)
    created = result.upserted_id is not None
    if created:
        logger.info("Recorded %s event %s", type, key)
    return created


def forget_event(db: Database, key: str) -> None:
    """Drop an event in any status so the same key can be recorded again."""
    result = db["outbox"].delete_one({"key": key})
    if result.deleted_count:
        logger.info("Forgot event %s", key)


def _book_titles(db: Database, book_ids: Iterable[str]) -> Dict[str, str]:
    ids = [oid(b) for b in set(book_ids)]
    return {str(b["_id"]): b.get("title", "") for b in db["book"].find({"_id": {"$in": ids}}, {"title": 1})}


def _handle(db: Database, dispatcher: NotificationDispatcher, event: Dict[str, Any]) -> None:
    payload = event.get("payload") or {}
    event_type = event["type"]

    if event_type == "BOOK_SALE":
        book = db["book"].find_one({"_id": oid(payload["bookId"])})
        if not book or book.get("tag") != "Sale":
            logger.info("Book %s is no longer on sale, skipping event %s", payload["bookId"], event["key"])
            forget_event(db, event["key"])
            return
        user_ids = [str(u["_id"]) for u in db["user"].find({"role": "customer"}, {"_id": 1})]
        # users missed here are picked up by the login catch-up
        dispatcher.send_book_sale_notification(book, user_ids)
        return

    order = db["order"].find_one({"_id": oid(payload["orderId"])})
    if not order:
        logger.info("Order %s is gone, skipping event %s", payload["orderId"], event["key"])
        return
    if event_type == "ORDER_PLACED":
        titles = _book_titles(db, [item["book"] for item in order.get("items", [])])
        dispatcher.send_order_placed_notification(order, titles, event_key=event["key"])
    elif event_type == "ORDER_STATUS_UPDATE":
        dispatcher.send_order_status_notification(order, payload["status"], event_key=event["key"])
    elif event_type == "ORDER_COMPLETED":
        dispatcher.send_order_completed_notification(order, event_key=event["key"])
    else:
        raise ValueError(f"Unknown event type {event_type}")


def dispatch_pending(db: Database, dispatcher: NotificationDispatcher, limit: int = 100) -> Dict[str, int]:
    """Deliver pending events. Failures are logged and retried on a later run."""
    counts = {"sent": 0, "retrying": 0, "failed": 0}
    claimed = []
    for _ in range(limit):
        event = db["outbox"].find_one_and_update(
            {"status": "pending", "_id": {"$nin": claimed}},
            {"$set": {"status": "processing", "updatedAt": utcnow()}, "$inc": {"attempts": 1}},
            sort=[("createdAt", ASCENDING), ("_id", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
        if event is None:
            break
        claimed.append(event["_id"])
        try:
            _handle(db, dispatcher, event)
        except Exception as exc:
            status = "failed" if event.get("attempts", 1) >= MAX_ATTEMPTS else "pending"
            logger.warning("Dispatch of %s failed (attempt %s): %s", event["key"], event.get("attempts"), exc)
            db["outbox"].update_one(
                {"_id": event["_id"]},
                {"$set": {"status": status, "lastError": str(exc), "updatedAt": utcnow()}},
            )
            counts["failed" if status == "failed" else "retrying"] += 1
            continue
        now = utcnow()
        db["outbox"].update_one(
            {"_id": event["_id"]},
            {"$set": {"status": "sent", "sentAt": now, "lastError": None, "updatedAt": now}},
        )
        counts["sent"] += 1
    if claimed:
        logger.info("Outbox run: %s", counts)
    return counts
