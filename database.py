"""
MongoDB access for the booking service.

The client is created once from DATABASE_URL / DATABASE_NAME. When either
is missing ``db`` stays ``None`` and every route that needs storage answers
"Database not available".
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import settings
from errors import InternalError

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.database.url and settings.database.name:
    _client = MongoClient(
        settings.database.url,
        serverSelectionTimeoutMS=settings.database.timeout_ms,
    )
    db = _client[settings.database.name]
    logger.info("MongoDB client configured for database '%s'", settings.database.name)
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not set; running without a database")


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise InternalError("Database not available")
    return db


def now_utc() -> datetime:
    # Stored naive, in UTC, which is what pymongo hands back on reads.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def maybe_oid(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for valid hex ids (or ObjectIds), else None."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def doc_id(doc: Dict[str, Any]) -> str:
    return str(doc["_id"])


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping createdAt/updatedAt, and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(exclude_none=True)
    else:
        data_dict = dict(data)
    now = now_utc()
    data_dict.setdefault("createdAt", now)
    data_dict["updatedAt"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a Mongo document JSON friendly: add ``id`` and turn ObjectIds and datetimes into strings."""
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        # legacy bookings carry their own external "id"; keep it
        doc.setdefault("id", str(doc["_id"]))
    for k, v in list(doc.items()):
        doc[k] = _serialize_value(v)
    return doc


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value
