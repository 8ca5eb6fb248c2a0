"""
MongoDB access for the storefront.

Collections are named after the lowercase schema class (see schemas.py):
"user", "product", "order", "cartitem".
"""
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pymongo import MongoClient

import config
from errors import NotFoundError

client = MongoClient(config.DATABASE_URL) if config.DATABASE_URL else None
db = client[config.DATABASE_NAME] if client is not None else None


def get_db():
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def now():
    return datetime.now(timezone.utc)


def create_document(database, collection_name: str, data: dict) -> str:
    doc = dict(data)
    doc.setdefault("createdAt", now())
    doc["updatedAt"] = now()
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def parse_object_id(value, what: str = "Resource") -> ObjectId:
    """Malformed ids are reported like missing documents."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} not found")


def serialize(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d
