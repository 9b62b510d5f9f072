"""
Identity for the storefront: accounts, anonymous sessions and JWTs.

Privilege is the `role` stored on the user document and is re-read on every
request, so promoting or demoting an account takes effect immediately.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from bson import ObjectId
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ADMIN_UID, ALGORITHM, SECRET_KEY
from database import collection, create_document
from errors import PermissionDenied, Unauthenticated, ValidationError
from schemas import User

logger = structlog.get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/login", auto_error=False)


class Identity(BaseModel):
    uid: str
    name: Optional[str] = None
    email: Optional[str] = None
    role: str = "customer"
    is_anonymous: bool = False

    @property
    def is_admin(self) -> bool:
        return not self.is_anonymous and self.role == "admin"


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def register_user(name: str, email: str, password: str) -> Identity:
    email = email.lower()
    if not name.strip():
        raise ValidationError("Name is required.", {"name": "Name is required."})
    if collection("user").find_one({"email": email}):
        raise ValidationError("Email already registered", {"email": "Email already registered"})
    user = User(name=name.strip(), email=email, password_hash=get_password_hash(password), role="customer")
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise ValidationError("Email already registered", {"email": "Email already registered"})
    logger.info("user_registered", user_id=user_id, role=user.role)
    return Identity(uid=user_id, name=user.name, email=email, role=user.role)


def authenticate(email: str, password: str) -> Optional[Identity]:
    user = collection("user").find_one({"email": email.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        return None
    return _identity_from_user(user)


def start_anonymous_session() -> str:
    return create_access_token({"sub": f"anon-{uuid.uuid4().hex}", "anon": True})


def _identity_from_user(user: dict) -> Identity:
    return Identity(
        uid=str(user["_id"]),
        name=user.get("name"),
        email=user.get("email"),
        role=user.get("role", "customer"),
    )


def identity_from_token(token: Optional[str]) -> Optional[Identity]:
    """Decode a bearer token. No token means no identity; a bad one is an error."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise Unauthenticated("Could not validate credentials")
    subject = payload.get("sub")
    if subject is None:
        raise Unauthenticated("Could not validate credentials")
    if payload.get("anon"):
        return Identity(uid=subject, role="anonymous", is_anonymous=True)
    if not ObjectId.is_valid(subject):
        raise Unauthenticated("Could not validate credentials")
    user = collection("user").find_one({"_id": ObjectId(subject)})
    if not user:
        raise Unauthenticated("Could not validate credentials")
    return _identity_from_user(user)


def get_identity(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[Identity]:
    return identity_from_token(token)


# Policy checks, evaluated at call time by the operations that need them

def require_signed_in(identity: Optional[Identity]) -> Identity:
    if identity is None or identity.is_anonymous:
        raise Unauthenticated("You must be logged in to do that.")
    return identity


def require_admin(identity: Optional[Identity]) -> Identity:
    if identity is None or identity.is_anonymous or not identity.is_admin:
        raise PermissionDenied("Admins only")
    return identity


def bootstrap_admin(admin_uid: Optional[str] = None) -> bool:
    """Give the ADMIN_UID account the admin role, demoting any other admin.

    The operator sets ADMIN_UID to the id of an account they registered
    themselves; an email address alone proves nothing about ownership.
    """
    admin_uid = admin_uid if admin_uid is not None else ADMIN_UID
    if not admin_uid:
        return False
    if not ObjectId.is_valid(admin_uid):
        logger.warning("admin_bootstrap_skipped", user_id=admin_uid, reason="not a valid id")
        return False
    oid = ObjectId(admin_uid)
    users = collection("user")
    users.update_many({"_id": {"$ne": oid}, "role": "admin"}, {"$set": {"role": "customer"}})
    res = users.update_one({"_id": oid}, {"$set": {"role": "admin"}})
    if not res.matched_count:
        logger.warning("admin_bootstrap_skipped", user_id=admin_uid, reason="no such user")
        return False
    logger.info("admin_bootstrapped", user_id=admin_uid)
    return True
