"""
Notification dispatch

Turns store events (order placed, order status changed, order completed, book
put on sale) into a row in the user's local notification log plus a device
push through the Expo push service.
"""

import logging
import os
import time
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

import httpx

from local_store import LocalStore

logger = logging.getLogger(__name__)

EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
EXPO_ACCESS_TOKEN = os.getenv("EXPO_ACCESS_TOKEN")
PUSH_NOTIFICATIONS_ENABLED = os.getenv("PUSH_NOTIFICATIONS_ENABLED", "true").lower() in ("1", "true", "yes")
SALE_NOTIFICATION_INTERVAL = float(os.getenv("SALE_NOTIFICATION_INTERVAL", "2"))
CURRENCY = "₱"


class PushError(Exception):
    pass


def format_push_token(token: str) -> str:
    """Tokens are stored bare; Expo wants the ExponentPushToken[...] form."""
    if token.startswith("ExponentPushToken[") or token.startswith("ExpoPushToken["):
        return token
    return f"ExponentPushToken[{token}]"


class ExpoPushGateway:
    def __init__(
        self,
        url: str = EXPO_PUSH_URL,
        access_token: Optional[str] = EXPO_ACCESS_TOKEN,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.access_token = access_token
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        message = {
            "to": format_push_token(token),
            "title": title,
            "body": body,
            "data": data or {},
            "sound": "default",
        }
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        try:
            response = self._client.post(self.url, json=message, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise PushError(f"Push request failed: {exc}") from exc

        ticket = response.json().get("data") or {}
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if ticket.get("status") == "error":
            raise PushError(ticket.get("message") or "Push rejected by Expo")
        return ticket

    def close(self) -> None:
        self._client.close()


class LoggingPushGateway:
    """Used when push delivery is switched off; the local log still fills up."""

    def send(self, token: str, title: str, body: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        logger.info("Push disabled, not sending %r to %s", title, token)
        return {"status": "skipped"}

    def close(self) -> None:
        pass


def build_push_gateway():
    if PUSH_NOTIFICATIONS_ENABLED:
        return ExpoPushGateway()
    return LoggingPushGateway()


class FanOutResult(NamedTuple):
    successful: List[str]
    failed: List[Dict[str, str]]


def sale_event_key(book_id: str, user_id: str) -> str:
    return f"book:{book_id}:sale:{user_id}"


def order_number(order: Dict[str, Any]) -> str:
    return str(order.get("_id") or order.get("id") or "")[-8:].upper()


def discount_percentage(price: float, discount_price: float) -> int:
    if not price or price <= 0:
        return 0
    return round((price - discount_price) / price * 100)


def item_summary(items: List[Dict[str, Any]], titles: Dict[str, str]) -> str:
    """'A (x2), B (x1) and 3 more items' for the first two line items."""
    parts = []
    for index, item in enumerate(items[:2]):
        name = titles.get(str(item.get("book"))) or f"Book {index + 1}"
        parts.append(f"{name} (x{item.get('quantity', 1)})")
    summary = ", ".join(parts)
    remaining = len(items) - 2
    if remaining > 0:
        summary += f" and {remaining} more item{'s' if remaining != 1 else ''}"
    return summary


class NotificationDispatcher:
    def __init__(
        self,
        store: LocalStore,
        gateway,
        token_lookup: Callable[[str], Optional[str]] = lambda user_id: None,
        interval: float = SALE_NOTIFICATION_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.gateway = gateway
        self.token_lookup = token_lookup
        self.interval = interval
        self.sleep = sleep

    def _deliver(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Dict[str, Any],
        type: str,
        event_key: Optional[str] = None,
    ) -> int:
        """Log the notification and push it. A keyed notice is pushed at most once."""
        notification_id = self.store.save_notification(user_id, title, body, data, type, event_key)
        if event_key and self.store.was_pushed(notification_id):
            logger.debug("Notification %s (%s) was already pushed", notification_id, event_key)
            return notification_id
        token = self.token_lookup(user_id)
        if token:
            self.gateway.send(token, title, body, data)
            self.store.mark_pushed(notification_id)
        else:
            logger.debug("User %s has no push token, logged notification %s only", user_id, notification_id)
        return notification_id

    # ---------------- orders ----------------

    def send_order_status_notification(self, order: Dict[str, Any], new_status: str, event_key: Optional[str] = None) -> int:
        order_id = str(order.get("_id") or order.get("id"))
        number = order_number(order)
        title = "Order Status Updated"
        body = f"Order #{number} status changed to {new_status.upper()}"
        data = {
            "type": "ORDER_STATUS_UPDATE",
            "orderId": order_id,
            "status": new_status,
            "orderNumber": number,
        }
        return self._deliver(order["user"], title, body, data, "ORDER_STATUS_UPDATE", event_key)

    def send_order_completed_notification(self, order: Dict[str, Any], event_key: Optional[str] = None) -> int:
        order_id = str(order.get("_id") or order.get("id"))
        number = order_number(order)
        title = "Order Completed"
        body = f"Your order #{number} has been delivered. Enjoy your books!"
        data = {
            "type": "ORDER_COMPLETED",
            "orderId": order_id,
            "status": order.get("status"),
            "orderNumber": number,
        }
        return self._deliver(order["user"], title, body, data, "ORDER_COMPLETED", event_key)

    def send_order_placed_notification(
        self,
        order: Dict[str, Any],
        titles: Optional[Dict[str, str]] = None,
        event_key: Optional[str] = None,
    ) -> int:
        order_id = str(order.get("_id") or order.get("id"))
        number = order_number(order)
        items = order.get("items") or []
        total_items = sum(int(i.get("quantity", 1)) for i in items)
        total = float(order.get("totalAmount") or 0)
        summary = item_summary(items, titles or {})

        title = "Order Placed Successfully"
        body = (
            f"Your order #{number} with {total_items} item{'s' if total_items != 1 else ''} "
            f"has been placed! Total: {CURRENCY}{total:.2f}"
        )
        if summary:
            body = f"{body}\n\nItems: {summary}"
        data = {
            "type": "ORDER_PLACED",
            "orderId": order_id,
            "orderNumber": number,
            "totalAmount": total,
            "status": order.get("status", "Pending"),
            "itemSummary": summary,
        }
        return self._deliver(order["user"], title, body, data, "ORDER_PLACED", event_key)

    # ---------------- sales ----------------

    @staticmethod
    def _sale_message(book_id: str, book_title: str, price: float, discount_price: float) -> Tuple[str, str, Dict[str, Any]]:
        percent = discount_percentage(price, discount_price)
        title = f"{book_title} is on {percent}% discount!"
        body = f"Now {CURRENCY}{discount_price:.2f} (was {CURRENCY}{price:.2f}). Order Now!!"
        data = {
            "type": "BOOK_SALE",
            "bookId": book_id,
            "bookTitle": book_title,
            "price": price,
            "discountPrice": discount_price,
            "discount": percent,
        }
        return title, body, data

    def send_book_sale_notification(self, book: Dict[str, Any], user_ids: Iterable[str]) -> FanOutResult:
        """Record the sale and notify every user not already told about it.

        Each recipient is handled on its own; a failure is logged and
        collected without stopping the loop.
        """
        book_id = str(book.get("_id") or book.get("id"))
        price = float(book["price"])
        discount_price = float(book["discountPrice"])
        self.store.save_sale_book(book_id, book["title"], price, discount_price)
        title, body, data = self._sale_message(book_id, book["title"], price, discount_price)

        successful: List[str] = []
        failed: List[Dict[str, str]] = []
        for user_id in user_ids:
            if self.store.was_user_notified(book_id, user_id):
                continue
            try:
                self._deliver(user_id, title, body, data, "BOOK_SALE", sale_event_key(book_id, user_id))
                self.store.mark_user_notified(book_id, user_id)
                successful.append(user_id)
            except Exception as exc:
                logger.warning("Sale notification for book %s to user %s failed: %s", book_id, user_id, exc)
                failed.append({"userId": user_id, "error": str(exc)})

        logger.info(
            "Sale notifications for book %s: %d sent, %d failed",
            book_id, len(successful), len(failed),
        )
        return FanOutResult(successful, failed)

    def check_pending_sale_notifications(self, user_id: str) -> List[str]:
        """Catch a user up on sales announced while they were away."""
        pending = self.store.get_unnotified_sale_books(user_id)
        sent: List[str] = []
        for index, row in enumerate(pending):
            if index:
                self.sleep(self.interval)
            title, body, data = self._sale_message(row["book_id"], row["book_title"], row["price"], row["discount_price"])
            try:
                self._deliver(user_id, title, body, data, "BOOK_SALE", sale_event_key(row["book_id"], user_id))
                self.store.mark_user_notified(row["book_id"], user_id)
                sent.append(row["book_id"])
            except Exception as exc:
                logger.warning("Catch-up notification for book %s to user %s failed: %s", row["book_id"], user_id, exc)
        if pending:
            logger.info("Caught user %s up on %d of %d sale books", user_id, len(sent), len(pending))
        return sent

    def forget_sale_book(self, book_id: str) -> None:
        self.store.remove_sale_book(book_id)
