"""
MongoDB access helpers.

Collections are named after the lowercase document kind: "user", "product",
"category", "order", "newsletter".
"""
import re
from datetime import datetime, timezone
from typing import Any, Optional, Union

import structlog
from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, TEXT

from config import get_settings

logger = structlog.get_logger(__name__)

_settings = get_settings()
_client = None
db = None

if _settings.database_url and _settings.database_name:
    _client = MongoClient(_settings.database_url)
    db = _client[_settings.database_name]


def get_db():
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId]) -> ObjectId:
    """Raises bson.errors.InvalidId for malformed ids; the error handler maps it to 404."""
    if isinstance(value, ObjectId):
        return value
    return ObjectId(value)


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def _jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def serialize_doc(doc: Optional[dict], exclude: tuple = ()) -> Optional[dict]:
    if not doc:
        return doc
    d = {k: v for k, v in doc.items() if k not in exclude}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return _jsonable(d)


def contains(term: str) -> dict:
    """Case-insensitive substring match; the term is matched literally."""
    return {"$regex": re.escape(term), "$options": "i"}


def paginate(cursor, page: int, limit: int):
    return cursor.skip((page - 1) * limit).limit(limit)


def pagination_meta(page: int, limit: int, total: int) -> dict:
    pages = (total + limit - 1) // limit if limit else 0
    return {"page": page, "limit": limit, "total": total, "pages": pages}


def ensure_indexes(database) -> None:
    database["user"].create_index("email", unique=True)
    database["newsletter"].create_index("email", unique=True)
    database["newsletter"].create_index("is_active")
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("is_paid", ASCENDING), ("created_at", ASCENDING)])
    database["product"].create_index("variants.sku", unique=True, sparse=True)
    database["product"].create_index([("name", TEXT), ("description", TEXT), ("tags", TEXT)])
    database["product"].create_index([("category", ASCENDING), ("subcategory", ASCENDING)])
    database["product"].create_index("price")
    database["product"].create_index([("created_at", DESCENDING)])
    logger.info("indexes_ensured", database=database.name)
