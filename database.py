"""
MongoDB access for the storefront.

The connection is opened with connect() and closed with disconnect(); route
handlers receive the live database through the get_db() dependency.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect(url: Optional[str] = None, name: Optional[str] = None, client: Optional[MongoClient] = None) -> Optional[Database]:
    global _client, db
    url = url or config.DATABASE_URL
    name = name or config.DATABASE_NAME
    if client is None:
        if not url or not name:
            logger.warning("DATABASE_URL/DATABASE_NAME not set, database disabled")
            return None
        client = MongoClient(url)
    _client = client
    db = client[name or "lensaura"]
    ensure_indexes(db)
    logger.info("Connected to database %s", db.name)
    return db


def disconnect():
    global _client, db
    if _client is not None:
        _client.close()
        logger.info("Database connection closed")
    _client = None
    db = None


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def ensure_indexes(database: Database):
    database["product"].create_index([("slug", ASCENDING)], unique=True)
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("stripe_session_id", ASCENDING)], unique=True)
    database["cart"].create_index([("session_id", ASCENDING)], unique=True)
    database["user"].create_index([("email", ASCENDING)], unique=True)


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id as a string."""
    database = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None,
                  database: Optional[Database] = None) -> List[Dict[str, Any]]:
    database = database if database is not None else get_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=400, detail="Invalid ID format")


def to_str_id(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    return d
