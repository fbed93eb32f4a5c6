"""
Local notification store

Embedded SQLite database holding the per-user notification log, the sale-book
tracking tables and the cart_items schema (the cart itself is served from
Mongo). The store is constructed explicitly and opened/closed by its owner
(the app lifespan, or a test fixture with ":memory:").
"""

import json
import logging
import sqlite3
import threading
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    type TEXT DEFAULT 'ORDER_STATUS_UPDATE',
    data TEXT,
    read INTEGER DEFAULT 0,
    event_key TEXT UNIQUE,
    pushed INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);

CREATE TABLE IF NOT EXISTS sale_books (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id TEXT NOT NULL UNIQUE,
    book_title TEXT NOT NULL,
    price REAL NOT NULL,
    discount_price REAL NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS sale_book_notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    book_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    notified INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(book_id, user_id)
);

CREATE TABLE IF NOT EXISTS cart_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    product_id TEXT NOT NULL UNIQUE,
    product_name TEXT NOT NULL,
    product_price REAL NOT NULL,
    discountPrice REAL,
    product_image TEXT,
    quantity INTEGER DEFAULT 1,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""


class StoreClosedError(RuntimeError):
    pass


class LocalStore:
    def __init__(self, path: str = ":memory:"):
        self.path = path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    # ---------------- lifecycle ----------------

    def open(self) -> "LocalStore":
        if self._conn is not None:
            return self
        logger.info("Opening local store at %s", self.path)
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.executescript(SCHEMA)
        conn.commit()
        self._conn = conn
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._conn is None:
            raise StoreClosedError("Local store is not open")
        with self._lock:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur

    def _fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        if self._conn is None:
            raise StoreClosedError("Local store is not open")
        with self._lock:
            return [dict(row) for row in self._conn.execute(sql, params).fetchall()]

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    # ---------------- notification log ----------------

    def save_notification(
        self,
        user_id: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
        type: str = "ORDER_STATUS_UPDATE",
        event_key: Optional[str] = None,
    ) -> int:
        """Append to the log. A repeated `event_key` returns the existing row id."""
        cur = self._execute(
            """
            INSERT INTO notifications (user_id, title, body, data, type, event_key) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(event_key) DO NOTHING
            """,
            (user_id, title, body, json.dumps(data or {}, default=str), type, event_key),
        )
        if cur.rowcount:
            return cur.lastrowid
        return self._fetchone("SELECT id FROM notifications WHERE event_key = ?", (event_key,))["id"]

    @staticmethod
    def _decode_notification(row: Dict[str, Any]) -> Dict[str, Any]:
        row["data"] = json.loads(row.get("data") or "{}")
        row["read"] = bool(row.get("read"))
        return row

    def get_notifications(self, user_id: str, type: Optional[str] = None) -> List[Dict[str, Any]]:
        if type:
            rows = self._fetchall(
                "SELECT * FROM notifications WHERE user_id = ? AND type = ? ORDER BY created_at DESC, id DESC",
                (user_id, type),
            )
        else:
            rows = self._fetchall(
                "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC, id DESC",
                (user_id,),
            )
        return [self._decode_notification(r) for r in rows]

    def get_unread_count(self, user_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS count FROM notifications WHERE user_id = ? AND read = 0",
            (user_id,),
        )
        return row["count"] if row else 0

    def mark_as_read(self, notification_id: int, user_id: str) -> bool:
        cur = self._execute(
            "UPDATE notifications SET read = 1 WHERE id = ? AND user_id = ?",
            (notification_id, user_id),
        )
        return cur.rowcount > 0

    def clear_notifications(self, user_id: str) -> int:
        return self._execute("DELETE FROM notifications WHERE user_id = ?", (user_id,)).rowcount

    def mark_pushed(self, notification_id: int) -> None:
        self._execute("UPDATE notifications SET pushed = 1 WHERE id = ?", (notification_id,))

    def was_pushed(self, notification_id: int) -> bool:
        row = self._fetchone("SELECT pushed FROM notifications WHERE id = ?", (notification_id,))
        return bool(row and row["pushed"])

    # ---------------- sale tracking ----------------

    def save_sale_book(self, book_id: str, title: str, price: float, discount_price: float) -> None:
        self._execute(
            """
            INSERT INTO sale_books (book_id, book_title, price, discount_price) VALUES (?, ?, ?, ?)
            ON CONFLICT(book_id) DO UPDATE SET
                book_title = excluded.book_title,
                price = excluded.price,
                discount_price = excluded.discount_price
            """,
            (book_id, title, price, discount_price),
        )

    def remove_sale_book(self, book_id: str) -> None:
        """Forget a finished sale, so a later sale of the same book notifies again."""
        self._execute("DELETE FROM sale_books WHERE book_id = ?", (book_id,))
        self._execute("DELETE FROM sale_book_notifications WHERE book_id = ?", (book_id,))
        self._execute(
            "UPDATE notifications SET event_key = NULL WHERE event_key LIKE ?",
            (f"book:{book_id}:sale:%",),
        )

    def get_sale_books(self) -> List[Dict[str, Any]]:
        return self._fetchall("SELECT * FROM sale_books ORDER BY created_at DESC, id DESC")

    def mark_user_notified(self, book_id: str, user_id: str) -> None:
        self._execute(
            """
            INSERT INTO sale_book_notifications (book_id, user_id, notified) VALUES (?, ?, 1)
            ON CONFLICT(book_id, user_id) DO UPDATE SET notified = 1
            """,
            (book_id, user_id),
        )

    def was_user_notified(self, book_id: str, user_id: str) -> bool:
        row = self._fetchone(
            "SELECT notified FROM sale_book_notifications WHERE book_id = ? AND user_id = ?",
            (book_id, user_id),
        )
        return bool(row and row["notified"])

    def get_unnotified_sale_books(self, user_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            """
            SELECT sb.* FROM sale_books sb
            LEFT JOIN sale_book_notifications sbn
                ON sb.book_id = sbn.book_id AND sbn.user_id = ?
            WHERE sbn.id IS NULL OR sbn.notified = 0
            ORDER BY sb.created_at DESC, sb.id DESC
            """,
            (user_id,),
        )
