"""
MongoDB access for the E-Waste Marketplace.

Documents leave this module serialized: the Mongo `_id` becomes a string `id`.
References between documents (listing owner, collector, buyer) are stored as
user id strings.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

# MongoClient connects lazily, importing this module never touches the network
client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
db = client[DATABASE_NAME]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: str) -> Optional[ObjectId]:
    """Parse a string id, returning None when it cannot be an ObjectId."""
    if isinstance(value, ObjectId):
        return value
    # ObjectId(None) generates a fresh id instead of failing
    if value is None or not ObjectId.is_valid(value):
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


class MongoStore:
    """Document store used by the listing lifecycle and auth routes."""

    def __init__(self, database=None):
        self.db = database if database is not None else db

    def insert(self, collection: str, data: Dict[str, Any]) -> str:
        doc = dict(data)
        now = _now()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        result = self.db[collection].insert_one(doc)
        return str(result.inserted_id)

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        return serialize_doc(self.db[collection].find_one({"_id": oid}))

    def find_one(self, collection: str, filt: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return serialize_doc(self.db[collection].find_one(filt))

    def find(self, collection: str, filt: Optional[Dict[str, Any]] = None, newest_first: bool = True) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filt or {})
        if newest_first:
            cursor = cursor.sort("created_at", DESCENDING)
        return [serialize_doc(d) for d in cursor]

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        changes = dict(fields)
        changes.pop("id", None)
        changes["updated_at"] = _now()
        doc = self.db[collection].find_one_and_update(
            {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        return serialize_doc(doc)

    def delete(self, collection: str, doc_id: str) -> bool:
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        return self.db[collection].delete_one({"_id": oid}).deleted_count == 1

    def collection_names(self) -> List[str]:
        return self.db.list_collection_names()


def ensure_indexes(database=None):
    database = database if database is not None else db
    database["user"].create_index([("email", ASCENDING)], unique=True)
    for name in ("ewaste", "bulkewaste"):
        database[name].create_index([("owner", ASCENDING), ("created_at", DESCENDING)])
    logger.info("indexes_ensured db=%s", database.name)
