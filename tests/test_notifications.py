import httpx
import pytest

from notifications import (
    ExpoPushGateway,
    NotificationDispatcher,
    PushError,
    discount_percentage,
    format_push_token,
    item_summary,
    order_number,
)

SALE_BOOK = {"_id": "b1", "title": "Dune", "price": 500.0, "discountPrice": 400.0}


def test_order_number_is_last_eight_chars_uppercased():
    assert order_number({"_id": "6650aaaabbbbccccddddeeee"}) == "DDDDEEEE"


def test_discount_percentage_rounds():
    assert discount_percentage(300, 200) == 33
    assert discount_percentage(0, 10) == 0


def test_item_summary_mentions_remaining_items():
    items = [{"book": "a", "quantity": 2}, {"book": "b", "quantity": 1}, {"book": "c", "quantity": 1}]
    assert item_summary(items, {"a": "Dune"}) == "Dune (x2), Book 2 (x1) and 1 more item"


def test_format_push_token():
    assert format_push_token("abc") == "ExponentPushToken[abc]"
    assert format_push_token("ExponentPushToken[abc]") == "ExponentPushToken[abc]"


def test_status_notification_without_token_is_only_logged(store, gateway):
    dispatcher = NotificationDispatcher(store, gateway)
    dispatcher.send_order_status_notification({"_id": "6650aaaabbbbccccddddeeee", "user": "u1"}, "Processing")

    [note] = store.get_notifications("u1")
    assert note["body"] == "Order #DDDDEEEE status changed to PROCESSING"
    assert note["data"]["status"] == "Processing"
    assert note["read"] is False
    assert gateway.sent == []


def test_keyed_notice_is_pushed_once(store, gateway):
    dispatcher = NotificationDispatcher(store, gateway, token_lookup=lambda _: "tok-u1")
    order = {"_id": "6650aaaabbbbccccddddeeee", "user": "u1"}
    first = dispatcher.send_order_status_notification(order, "Shipped", event_key="order:o1:status:Shipped")
    second = dispatcher.send_order_status_notification(order, "Shipped", event_key="order:o1:status:Shipped")

    assert first == second
    assert len(gateway.sent) == 1
    assert len(store.get_notifications("u1")) == 1


def test_failed_push_is_retried_with_the_same_key(store, gateway):
    gateway.failing.add("tok-u1")
    dispatcher = NotificationDispatcher(store, gateway, token_lookup=lambda _: "tok-u1")
    order = {"_id": "6650aaaabbbbccccddddeeee", "user": "u1"}
    with pytest.raises(PushError):
        dispatcher.send_order_completed_notification(order, event_key="order:o1:completed")

    gateway.failing.clear()
    dispatcher.send_order_completed_notification(order, event_key="order:o1:completed")
    dispatcher.send_order_completed_notification(order, event_key="order:o1:completed")
    assert len(gateway.sent) == 1
    assert len(store.get_notifications("u1")) == 1


def test_sale_fan_out_isolates_failures(store, gateway):
    gateway.failing.add("tok-u2")
    dispatcher = NotificationDispatcher(store, gateway, token_lookup=lambda user_id: f"tok-{user_id}")

    result = dispatcher.send_book_sale_notification(SALE_BOOK, ["u1", "u2", "u3"])

    assert result.successful == ["u1", "u3"]
    assert [f["userId"] for f in result.failed] == ["u2"]
    assert [m["token"] for m in gateway.sent] == ["tok-u1", "tok-u3"]
    assert gateway.sent[0]["title"] == "Dune is on 20% discount!"
    assert store.was_user_notified("b1", "u1")
    assert not store.was_user_notified("b1", "u2")


def test_sale_fan_out_skips_users_already_told(store, gateway):
    dispatcher = NotificationDispatcher(store, gateway)
    dispatcher.send_book_sale_notification(SALE_BOOK, ["u1"])
    again = dispatcher.send_book_sale_notification(SALE_BOOK, ["u1", "u2"])
    assert again.successful == ["u2"]
    assert len(store.get_notifications("u1", "BOOK_SALE")) == 1


def test_catch_up_sends_each_sale_once(store, gateway):
    sleeps = []
    dispatcher = NotificationDispatcher(store, gateway, interval=2, sleep=sleeps.append)
    store.save_sale_book("b1", "Dune", 500.0, 400.0)
    store.save_sale_book("b2", "Emma", 200.0, 150.0)
    store.save_sale_book("b3", "Ulysses", 300.0, 270.0)
    store.mark_user_notified("b2", "u1")

    sent = dispatcher.check_pending_sale_notifications("u1")
    assert sorted(sent) == ["b1", "b3"]
    assert sleeps == [2]

    assert dispatcher.check_pending_sale_notifications("u1") == []
    assert len(store.get_notifications("u1", "BOOK_SALE")) == 2


def test_catch_up_failure_keeps_sale_pending(store, gateway):
    gateway.failing.add("tok")
    dispatcher = NotificationDispatcher(store, gateway, token_lookup=lambda _: "tok", sleep=lambda _: None)
    store.save_sale_book("b1", "Dune", 500.0, 400.0)

    assert dispatcher.check_pending_sale_notifications("u1") == []
    gateway.failing.clear()
    assert dispatcher.check_pending_sale_notifications("u1") == ["b1"]
    assert len(store.get_notifications("u1", "BOOK_SALE")) == 1


def test_ended_sale_can_be_announced_again(store, gateway):
    dispatcher = NotificationDispatcher(store, gateway)
    dispatcher.send_book_sale_notification(SALE_BOOK, ["u1"])
    dispatcher.forget_sale_book("b1")
    assert dispatcher.check_pending_sale_notifications("u1") == []

    result = dispatcher.send_book_sale_notification(SALE_BOOK, ["u1"])
    assert result.successful == ["u1"]
    assert len(store.get_notifications("u1", "BOOK_SALE")) == 2


# ---------------- Expo gateway ----------------


def expo_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_expo_gateway_posts_message():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = request.read()
        return httpx.Response(200, json={"data": {"status": "ok", "id": "ticket-1"}})

    gateway = ExpoPushGateway(url="https://push.bookmail.com/send", access_token="secret", client=expo_client(handler))
    ticket = gateway.send("abc", "Hello", "World", {"type": "ORDER_PLACED"})

    assert ticket["id"] == "ticket-1"
    assert seen["auth"] == "Bearer secret"
    assert b"ExponentPushToken[abc]" in seen["body"]


def test_expo_gateway_raises_on_error_ticket():
    def handler(request):
        return httpx.Response(200, json={"data": [{"status": "error", "message": "DeviceNotRegistered"}]})

    gateway = ExpoPushGateway(url="https://push.bookmail.com/send", client=expo_client(handler))
    with pytest.raises(PushError, match="DeviceNotRegistered"):
        gateway.send("abc", "Hello", "World")


def test_expo_gateway_raises_on_http_error():
    gateway = ExpoPushGateway(url="https://push.bookmail.com/send", client=expo_client(lambda r: httpx.Response(503)))
    with pytest.raises(PushError):
        gateway.send("abc", "Hello", "World")


# ---------------- API ----------------


def test_notification_endpoints(client, store, customer, other_customer):
    user_id = customer["user"]["id"]
    first = store.save_notification(user_id, "Order Placed Successfully", "...", {"orderId": "o1"}, "ORDER_PLACED")
    store.save_notification(user_id, "Order Status Updated", "...", {"orderId": "o1"})
    store.save_notification(other_customer["user"]["id"], "Not yours", "...")

    listed = client.get("/api/notifications", headers=customer["headers"]).json()["notifications"]
    assert [n["title"] for n in listed] == ["Order Status Updated", "Order Placed Successfully"]
    placed = client.get("/api/notifications", params={"type": "ORDER_PLACED"}, headers=customer["headers"]).json()
    assert [n["id"] for n in placed["notifications"]] == [first]

    assert client.get("/api/notifications/unread-count", headers=customer["headers"]).json() == {"count": 2}
    assert client.put(f"/api/notifications/{first}/read", headers=customer["headers"]).status_code == 200
    assert client.put(f"/api/notifications/{first}/read", headers=other_customer["headers"]).status_code == 404
    assert client.get("/api/notifications/unread-count", headers=customer["headers"]).json() == {"count": 1}

    assert client.delete("/api/notifications", headers=customer["headers"]).json()["deleted"] == 2
    assert len(store.get_notifications(other_customer["user"]["id"])) == 1


def test_login_catches_customer_up_on_sales(client, store):
    client.post("/api/users/register", json={"username": "frank", "email": "frank@bookmail.com", "password": "hunter22"})
    store.save_sale_book("b9", "Emma", 200.0, 150.0)

    res = client.post("/api/users/login", json={"email": "frank@bookmail.com", "password": "hunter22"})
    assert res.status_code == 200
    user_id = res.json()["user"]["id"]
    assert store.was_user_notified("b9", user_id)

    headers = {"Authorization": f"Bearer {res.json()['token']}"}
    assert client.post("/api/notifications/check-sales", headers=headers).status_code == 202
    assert len(store.get_notifications(user_id, "BOOK_SALE")) == 1
