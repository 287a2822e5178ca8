"""
MongoDB access helpers.

Collections (one per document type):
- "product", "user", "guest_user", "order", "settings", "inventory_purchase"

The client is created on first use so importing this module never opens a
connection; request handlers receive the database through ``get_db``.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from errors import NotFoundError

_client: Optional[MongoClient] = None


def get_db() -> Database:
    global _client
    if _client is None:
        _client = MongoClient(DATABASE_URL)
    return _client[DATABASE_NAME]


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes; keep ours comparable with them.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["guest_user"].create_index("email", unique=True)
    db["order"].create_index("user_id")
    db["order"].create_index("shipping_info.email")
    db["order"].create_index([("created_at", DESCENDING)])
    db["inventory_purchase"].create_index([("date", DESCENDING)])
    db["product"].create_index([("name", ASCENDING)])


def create_document(db: Database, collection: str, data: Dict[str, Any]) -> str:
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    return str(db[collection].insert_one(doc).inserted_id)


def get_documents(
    db: Database,
    collection: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[tuple]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    cursor = db[collection].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value: Any, entity: str = "Document") -> ObjectId:
    """Turn a hex id into an ObjectId; a malformed id cannot name anything, so it is a 404."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{entity} not found: {value}")


def _public(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _public(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_public(v) for v in value]
    return value


def doc_to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    # hide sensitive fields
    for field in ("password_hash", "verification_token", "verification_token_expires"):
        doc.pop(field, None)
    return _public(doc)
