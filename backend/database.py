import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

ROOT_DIR = Path(__file__).parent
# Ensure imports resolve to backend/* modules even when started from repo root.
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
load_dotenv(ROOT_DIR / ".env")

_client: Optional[AsyncIOMotorClient] = None


def get_client() -> AsyncIOMotorClient:
    global _client
    if _client is None:
        mongo_url = os.environ.get("MONGO_URL", "").strip()
        if not mongo_url:
            raise RuntimeError("MONGO_URL must be set")
        _client = AsyncIOMotorClient(mongo_url)
    return _client


def get_db() -> AsyncIOMotorDatabase:
    db_name = os.environ.get("DB_NAME", "").strip()
    if not db_name:
        raise RuntimeError("DB_NAME must be set")
    return get_client()[db_name]


def close_client() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


def without_object_id(doc: Optional[dict]) -> Optional[dict]:
    """Drop Mongo's ``_id`` from a document returned by a write.

    ``find_one_and_update`` is always called without excluding ``_id`` so the
    post-update read resolves by ``_id`` rather than by the original filter.
    """
    if doc is not None:
        doc.pop("_id", None)
    return doc
