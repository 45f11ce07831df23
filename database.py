"""
Database helpers for the Hostel Management API (MongoDB via pymongo).

The client is opened once at application startup by `connect()` and the
resulting database handle is attached to `app.state.db`. Route handlers
receive it through the `get_db` dependency defined in main.py; nothing in
this module reconnects lazily.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Optional, Union, List

from pydantic import BaseModel
from pymongo import MongoClient, ASCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "hostel_management")
DATABASE_TIMEOUT_MS = int(os.getenv("DATABASE_TIMEOUT_MS", "5000"))


def connect(url: Optional[str] = None, name: Optional[str] = None, client: Optional[MongoClient] = None) -> Database:
    """Open the client, verify it answers a ping and make sure indexes exist."""
    if client is None:
        client = MongoClient(url or DATABASE_URL, serverSelectionTimeoutMS=DATABASE_TIMEOUT_MS)
    db = client[name or DATABASE_NAME]
    try:
        db.command("ping")
        ensure_indexes(db)
    except PyMongoError:
        client.close()
        raise
    logger.info("Connected to MongoDB database %s", db.name)
    return db


def disconnect(db: Optional[Database]) -> None:
    if db is None:
        return
    db.client.close()
    logger.info("Closed MongoDB connection")


def is_ready(db: Optional[Database]) -> bool:
    if db is None:
        return False
    try:
        db.command("ping")
        return True
    except PyMongoError:
        logger.warning("Database ping failed", exc_info=True)
        return False


def ensure_indexes(db: Database) -> None:
    db.user.create_index([("email", ASCENDING)], unique=True)
    db.user.create_index([("student_number", ASCENDING)], unique=True, sparse=True)
    db.room.create_index([("room_number", ASCENDING)], unique=True)
    db.messmenu.create_index([("day", ASCENDING)], unique=True)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created/updated timestamps and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict["created_at"] = _now()
    data_dict["updated_at"] = _now()
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  sort: Optional[List[tuple]] = None, limit: Optional[int] = None) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
