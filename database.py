"""
MongoDB connection and document helpers.

The connection is configured from DATABASE_URL / DATABASE_NAME. When either is
missing ``db`` stays None and the API reports the database as unavailable.
"""
import logging
import os
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import NotFoundError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client: Optional[MongoClient] = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId], what: str = "Document") -> ObjectId:
    """Parses an id, treating malformed ids as a missing document."""
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        raise NotFoundError(f"{what} not found")
    return ObjectId(value)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None, session=None) -> ObjectId:
    """Inserts a document stamped with created_at/updated_at and returns its id.

    A dict argument is stamped in place and receives its ``_id``.
    """
    target = database if database is not None else db
    document = data.model_dump() if isinstance(data, BaseModel) else data
    now = utcnow()
    document.setdefault("created_at", now)
    document["updated_at"] = now
    result = target[collection_name].insert_one(document, session=session)
    document["_id"] = result.inserted_id
    return result.inserted_id


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database=None) -> List[Dict[str, Any]]:
    target = database if database is not None else db
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(value: Any) -> Any:
    """Renders a stored document as JSON-friendly data (``_id`` -> ``id``)."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                out["id"] = serialize_doc(v)
            else:
                out[k] = serialize_doc(v)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize_doc(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def ensure_indexes(database) -> None:
    database["variant"].create_index([("sku", ASCENDING)], unique=True)
    database["variant"].create_index(
        [("product_id", ASCENDING), ("size", ASCENDING), ("color", ASCENDING)], unique=True
    )
    database["variant"].create_index([("availability", ASCENDING), ("stock", ASCENDING)])
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["payment"].create_index([("order_id", ASCENDING)], unique=True)
    database["payment"].create_index([("razorpay_order_id", ASCENDING)])
    database["user"].create_index([("email", ASCENDING)], unique=True)
    logger.info("MongoDB indexes ensured")
