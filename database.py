"""
MongoDB connection and small document helpers.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; callers check for
that and report the database as unavailable instead of failing at import.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient

from config import settings

_client = None
db = None

if settings.database_configured:
    _client = MongoClient(settings.database_url, serverSelectionTimeoutMS=5000)
    db = _client[settings.database_name]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_document(collection, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at when absent. Returns the new id as a string."""
    if collection is None:
        raise RuntimeError("Database not available")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict.setdefault("created_at", utcnow_iso())
    result = collection.insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection, filter_dict: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    if collection is None:
        raise RuntimeError("Database not available")
    return list(collection.find(filter_dict or {}))


def id_filter(record_id: str) -> Dict[str, Any]:
    """Documents created here carry ObjectIds; imported ones may carry plain string ids."""
    if ObjectId.is_valid(record_id):
        return {"_id": {"$in": [ObjectId(record_id), record_id]}}
    return {"_id": record_id}
