"""
Back-office user management over the ``user`` collection.

Passwords are stored as salted PBKDF2 hashes and never leave this module:
every document handed back to a route goes through public_user().
"""
import hashlib
import hmac
import logging
import math
import re
import secrets
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, ensure_object_id, now, to_str_id
from errors import DuplicateUserError, ProtectedUserError, UserNotFoundError
from schemas import User

logger = logging.getLogger(__name__)

HASH_ITERATIONS = 200_000
RECENT_ORDERS = 5


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), HASH_ITERATIONS).hex()
    return f"{salt}${digest}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, digest = (stored or "").partition("$")
    if not salt or not digest:
        return False
    return hmac.compare_digest(hash_password(password, salt), stored)


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = to_str_id(doc)
    user.pop("password_hash", None)
    return user


def list_users(db: Database, page: int = 1, limit: int = 10, search: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"first_name": {"$regex": pattern, "$options": "i"}},
            {"last_name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
        ]
    cursor = (db["user"].find(query, {"password_hash": 0})
              .sort([("created_at", -1)])
              .skip((page - 1) * limit)
              .limit(limit))
    total = db["user"].count_documents(query)
    return {
        "users": [public_user(u) for u in cursor],
        "pagination": {"total": total, "page": page, "limit": limit, "pages": math.ceil(total / limit)},
    }


def create_user(db: Database, user: User, password: str) -> Dict[str, Any]:
    data = user.model_dump()
    data["email"] = data["email"].lower()
    if db["user"].find_one({"email": data["email"]}, {"_id": 1}) is not None:
        raise DuplicateUserError(data["email"])
    data["password_hash"] = hash_password(password)
    try:
        user_id = create_document("user", data, database=db)
    except DuplicateKeyError:
        raise DuplicateUserError(data["email"])
    logger.info("Created %s user %s", data["role"], data["email"])
    return get_user(db, user_id)


def _load(db: Database, user_id: str) -> Dict[str, Any]:
    doc = db["user"].find_one({"_id": ensure_object_id(user_id)})
    if not doc:
        raise UserNotFoundError(user_id)
    return doc


def get_user(db: Database, user_id: str) -> Dict[str, Any]:
    return public_user(_load(db, user_id))


def recent_orders(db: Database, user_id: str):
    return list(db["order"].find({"user_id": user_id}).sort([("created_at", -1)]).limit(RECENT_ORDERS))


def update_user(db: Database, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    doc = _load(db, user_id)
    if doc.get("role") == "superadmin" and changes.get("role", "superadmin") != "superadmin":
        raise ProtectedUserError("Only superadmins can change the role of other superadmins")
    if not changes:
        return public_user(doc)
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {**changes, "updated_at": now()}})
    logger.info("Updated user %s: %s", doc["email"], ", ".join(sorted(changes)))
    return get_user(db, user_id)


def delete_user(db: Database, user_id: str):
    doc = _load(db, user_id)
    if doc.get("role") == "superadmin":
        raise ProtectedUserError("Only superadmins can delete superadmins")
    db["user"].delete_one({"_id": doc["_id"]})
    logger.info("Deleted user %s", doc["email"])
