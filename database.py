"""
Database helpers

MongoDB connection plus the small set of helpers every controller uses.
Connection settings come from DATABASE_URL / DATABASE_NAME; when no URL is set
`db` stays None and `get_db` reports the database as unavailable.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import ServerError, ValidationError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "fullybooked")

NEWEST_FIRST = [("createdAt", DESCENDING), ("_id", DESCENDING)]

_client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db: Optional[Database] = _client[DATABASE_NAME] if _client is not None else None


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise ServerError("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("username", unique=True)
    database["user"].create_index("firebaseUid", unique=True, sparse=True)
    database["orderlist"].create_index([("user", ASCENDING), ("product", ASCENDING)], unique=True)
    database["outbox"].create_index("key", unique=True)
    database["review"].create_index([("user", ASCENDING), ("bookId", ASCENDING)], unique=True)
    database["review"].create_index("bookId")
    database["order"].create_index("email")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping createdAt/updatedAt. Returns the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump(by_alias=True)
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc
