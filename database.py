"""
Database access

MongoDB connection configured from DATABASE_URL / DATABASE_NAME plus a few
small document helpers shared by the routes.
"""
import os
import logging
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    try:
        client = MongoClient(DATABASE_URL)
        db = client[DATABASE_NAME]
    except Exception as e:
        logger.error(f"Could not configure MongoDB client: {e}")
        client = None
        db = None


def get_collection(name: str):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db[name]


def create_document(collection_name: str, data) -> str:
    """Insert a model or dict with created/updated timestamps, return the new id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = get_collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes() -> None:
    """Create the unique indexes behind username, profile and token lookups."""
    get_collection("user").create_index("email", unique=True)
    get_collection("session").create_index("token", unique=True)
    profiles = get_collection("profile")
    profiles.create_index("user_id", unique=True)
    profiles.create_index("username", unique=True)
    get_collection("link").create_index([("user_id", ASCENDING), ("order", ASCENDING)])
    get_collection("providertoken").create_index("user_id", unique=True)
    get_collection("pkcerequest").create_index("state", unique=True)
    get_collection("playerdevice").create_index("user_id", unique=True)
    logger.info("Database indexes ensured")
