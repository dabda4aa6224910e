"""
Database helpers

Thin wrapper around a pymongo database handle. `db` is None when
DATABASE_URL / DATABASE_NAME are not configured so the app can still boot.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def get_db():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document into a collection with created/updated timestamps"""
    database = get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict["created_at"] = now_utc()
    data_dict["updated_at"] = now_utc()
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Get documents from a collection, newest first"""
    cursor = get_db()[collection_name].find(filter_dict or {}).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    """Create the unique indexes the storefront relies on"""
    database = get_db()
    database["user"].create_index("email", unique=True)
    database["product"].create_index("slug", unique=True)
    database["product"].create_index([("is_active", ASCENDING), ("category", ASCENDING)])
    database["cartitem"].create_index(
        [("user_id", ASCENDING), ("product_id", ASCENDING), ("size", ASCENDING), ("color", ASCENDING)],
        unique=True,
    )
    database["wishlistitem"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["order"].create_index("order_number", unique=True, sparse=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["productrating"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database["designtemplate"].create_index("slug", unique=True)
    database["eventlog"].create_index([("type", ASCENDING), ("created_at", DESCENDING)])
    database["customorder"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])


def is_object_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value) and len(value) == 24


def to_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not is_object_id(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(value)


def _convert(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _convert(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_convert(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return {k: _convert(v) for k, v in doc.items()}
