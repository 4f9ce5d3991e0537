"""
MongoDB wiring

The db handle is created from DATABASE_URL / DATABASE_NAME. When either is
missing, db stays None and data routes answer "Database not available".
Collection names are the lowercase model names from schemas.py.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config
from errors import ShopError, ValidationError

client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def get_db():
    """FastAPI dependency; tests override it with an in-memory database."""
    if db is None:
        raise ShopError("Database not available")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str) -> ObjectId:
    # ObjectId(None) would mint a fresh id
    if not id_str:
        raise ValidationError("Invalid id")
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError("Invalid id")


def oid_or_none(id_str: Optional[str]) -> Optional[ObjectId]:
    if id_str and ObjectId.is_valid(id_str):
        return ObjectId(id_str)
    return None


def to_str_id(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    d = doc.copy()
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def create_document(database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    database["cart"].create_index([("user_id", ASCENDING)], unique=True)
    database["variant"].create_index([("sku", ASCENDING)], unique=True)
    database["coupon"].create_index([("code", ASCENDING)], unique=True)
    database["product"].create_index([("category", ASCENDING)])
    database["order"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database["rating"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
