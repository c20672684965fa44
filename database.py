"""
Database Connection and Helpers

MongoDB handle shared by the whole API plus the few write helpers every
resource uses: timestamped inserts, transactions and atomic counters.
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

from errors import DependencyError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
USE_TRANSACTIONS = os.getenv("DATABASE_TRANSACTIONS", "true").lower() in ("1", "true", "yes")

client: Optional[MongoClient] = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def _require_db():
    if db is None:
        raise DependencyError("Database not available. Check DATABASE_URL and DATABASE_NAME.")
    return db


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    database = _require_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc, session=session)
    return str(result.inserted_id)


@contextmanager
def transaction():
    """Yield a session with an open transaction, or None when disabled.

    Standalone mongod servers reject multi-document transactions, so
    DATABASE_TRANSACTIONS=false runs the same code path without a session.
    """
    _require_db()
    if not USE_TRANSACTIONS:
        yield None
        return
    with client.start_session() as session:
        with session.start_transaction():
            yield session


def next_sequence(name: str, session=None) -> int:
    database = _require_db()
    doc = database["counters"].find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return int(doc["value"])


def seed_sequence(name: str, collection_name: str, field: str) -> None:
    """Move a counter past the highest value already stored in a collection."""
    database = _require_db()
    last = database[collection_name].find_one(sort=[(field, DESCENDING)])
    if not last:
        return
    database["counters"].update_one(
        {"_id": name},
        {"$max": {"value": int(last[field])}},
        upsert=True,
    )


def ensure_indexes() -> None:
    database = _require_db()
    database["bills"].create_index([("serialNumber", ASCENDING)], unique=True)
    database["bills"].create_index([("partyName", ASCENDING), ("date", DESCENDING)])
    database["bills"].create_index([("createdBy", ASCENDING), ("status", ASCENDING)])
    # ObjectIds are unique across bills and works, so one earning per reference
    database["earnings"].create_index([("reference", ASCENDING)], unique=True, sparse=True)
    database["earnings"].create_index([("source", ASCENDING)])
    database["earnings"].create_index([("createdBy", ASCENDING), ("date", DESCENDING)])
    database["expenses"].create_index([("createdBy", ASCENDING), ("date", DESCENDING)])
    database["clients"].create_index([("email", ASCENDING), ("createdBy", ASCENDING)], unique=True)
    database["parties"].create_index([("name", ASCENDING), ("createdBy", ASCENDING)])
    database["users"].create_index([("email", ASCENDING)], unique=True)
    database["session"].create_index([("token", ASCENDING)])
    database["outbox"].create_index([("status", ASCENDING), ("next_attempt_at", ASCENDING)])
    seed_sequence("bill_serial", "bills", "serialNumber")
    logger.info("Indexes ensured on %s", database.name)
