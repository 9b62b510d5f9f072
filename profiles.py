from typing import Any, Dict, Optional

import structlog
from pymongo.errors import PyMongoError

from auth import Identity, require_signed_in
from database import collection, now
from errors import StoreError
from orders import validate_customer_info

logger = structlog.get_logger(__name__)


def get_profile(identity: Optional[Identity]) -> dict:
    """Saved delivery details, or a blank profile prefilled with the account name."""
    identity = require_signed_in(identity)
    try:
        doc = collection("profiles").find_one({"_id": identity.uid})
    except PyMongoError as exc:
        raise StoreError(f"Failed to load profile. {exc}") from exc
    profile = {"name": identity.name or "", "address": "", "phone_number": "", "last_updated": None}
    if doc:
        profile.update({k: v for k, v in doc.items() if k != "_id" and v})
    return profile


def save_profile(identity: Optional[Identity], data: Dict[str, Any]) -> dict:
    identity = require_signed_in(identity)
    profile = validate_customer_info(data)
    profile["last_updated"] = now()
    try:
        collection("profiles").update_one({"_id": identity.uid}, {"$set": profile}, upsert=True)
    except PyMongoError as exc:
        logger.error("profile_save_failed", user_id=identity.uid, error=str(exc))
        raise StoreError(f"Failed to save profile: {exc}") from exc
    logger.info("profile_saved", user_id=identity.uid)
    return profile
