"""
Mongo access for the storefront.

`db` is None when DATABASE_URL / DATABASE_NAME are not set; every helper
goes through `get_db()` so callers get a StoreError instead of an
AttributeError in that case. Collections are namespaced by APP_ID.
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient

from config import APP_ID, DATABASE_NAME, DATABASE_TRANSACTIONS, DATABASE_URL
from errors import NotFound, StoreError

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def get_db():
    if db is None:
        raise StoreError("Database not configured")
    return db


def collection(name: str):
    return get_db()[f"{APP_ID}.{name}"]


def now():
    return datetime.now(timezone.utc)


def to_obj_id(id_str: str, what: str = "Document") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not ObjectId.is_valid(id_str or ""):
        raise NotFound(f"{what} not found")
    return ObjectId(id_str)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def create_document(collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    data = {**data, "created_at": now()}
    return str(collection(collection_name).insert_one(data, session=session).inserted_id)


@contextmanager
def transaction():
    """Yield a session bound to a transaction, or None when transactions are off.

    Writes issued with the yielded session commit together when the block
    exits without an exception.
    """
    if not DATABASE_TRANSACTIONS or client is None:
        yield None
        return
    with client.start_session() as session:
        with session.start_transaction():
            yield session


def ensure_indexes():
    collection("orders").create_index([("user_id", 1), ("order_date", -1)])
    collection("orders").create_index([("order_date", -1)])
    collection("user").create_index("email", unique=True)
