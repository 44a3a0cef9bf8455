"""
MongoDB access for the circulation backend.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; the
health endpoint reports that state instead of failing at import.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def utc_now() -> datetime:
    # BSON dates carry no tzinfo; keep everything naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database is not configured (set DATABASE_URL and DATABASE_NAME)")
    return db


def to_document(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    target = database if database is not None else get_db()
    doc = to_document(data)
    now = utc_now()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def object_id(id_str: Any) -> Optional[ObjectId]:
    """Parse an id string, returning None when it is not a valid ObjectId."""
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        return None
    return ObjectId(id_str)


def canonical_id(id_str: Any) -> str:
    """Stored references use lowercase hex; normalise caller ids before querying."""
    oid = object_id(id_str)
    return str(oid) if oid is not None else str(id_str)


def ensure_schema(database: Database) -> None:
    """Create the indexes the lending rules rely on. Safe to run repeatedly."""
    loans = database["loan"]
    # at most one pending/borrowed loan per user; closed loans drop the field
    loans.create_index("active_slot", unique=True, sparse=True, name="one_open_loan_per_user")
    loans.create_index([("user_id", ASCENDING), ("book_id", ASCENDING), ("status", ASCENDING)], name="user_book_status")
    loans.create_index([("status", ASCENDING), ("due_date", ASCENDING)], name="status_due")
    loans.create_index([("requested_at", DESCENDING)], name="requested_at")

    payments = database["payment"]
    payments.create_index("tx_ref", unique=True, name="tx_ref_unique")
    # one pending, processing or completed payment per loan; failed ones drop the field
    payments.create_index("loan_slot", unique=True, sparse=True, name="one_live_payment_per_loan")
    payments.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)], name="user_created")
    payments.create_index("loan_id", name="loan_id")

    database["member"].create_index("email", name="email")
    logger.info("Schema ensured on database %s", database.name)
