"""
MongoDB access helpers.

One client per process. `get_db` is the FastAPI dependency every router uses,
so tests swap the whole store through `app.dependency_overrides`.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

client = MongoClient(
    config.DATABASE_URL,
    serverSelectionTimeoutMS=config.DB_TIMEOUT_MS,
    connectTimeoutMS=config.DB_TIMEOUT_MS,
)
db = client[config.DATABASE_NAME]


def get_db() -> Database:
    return db


def ping():
    """Fail fast when the server is unreachable instead of hanging on first use."""
    client.admin.command("ping")
    logger.info("Connected to MongoDB database %s", config.DATABASE_NAME)


def init_db():
    ping()
    ensure_indexes(db)


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with createdAt/updatedAt stamps and return its id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict.setdefault("createdAt", stamp)
    data_dict["updatedAt"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort=None) -> list:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id coming from a path or body. Anything malformed maps to None."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, Mapping):
        return object_id(value.get("_id", value.get("id")))
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def find_by_id(database: Database, collection_name: str, doc_id: Any) -> Optional[dict]:
    oid = object_id(doc_id)
    if oid is None:
        return None
    return database[collection_name].find_one({"_id": oid})


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def serialize_doc(doc: Optional[dict], hidden=("password",)) -> Optional[dict]:
    if not doc:
        return doc
    doc = {k: v for k, v in doc.items() if k not in hidden}
    _id = doc.pop("_id", None)
    out = _plain(doc)
    if _id is not None:
        out["id"] = str(_id)
    return out


def ensure_indexes(database: Database):
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["product"].create_index([("serialNumber", ASCENDING)], unique=True)
    database["product"].create_index([("catalogId", ASCENDING)])
    database["product"].create_index([("catalogId._id", ASCENDING)])
    database["catalog"].create_index([("isPublic", ASCENDING)])
    database["catalog"].create_index([("ownerId", ASCENDING)])
    database["catalog"].create_index([("ownerId._id", ASCENDING)])
    database["catalog"].create_index([("allowedUserIds", ASCENDING)])
    database["catalog"].create_index([("allowedUserIds._id", ASCENDING)])
    database["order"].create_index([("userId", ASCENDING)])
    database["order"].create_index([("catalogId", ASCENDING)])
    database["order"].create_index([("status", ASCENDING)])
    database["notification"].create_index([("user", ASCENDING), ("read", ASCENDING)])
    database["sizepreset"].create_index([("type", ASCENDING)], unique=True)
    database["claspimage"].create_index([("claspType", ASCENDING)], unique=True)
    database["wishlist"].create_index([("userId", ASCENDING), ("productId", ASCENDING)], unique=True)
