"""
Registered accounts: registration (absorbing any guest history for the same
e-mail), login, e-mail verification, profile and admin user management.
"""

import logging
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import VERIFICATION_TOKEN_TTL_HOURS
from database import create_document, doc_to_public, parse_object_id, utcnow
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from identity import find_guest, migrate_guest
from schemas import Address, ProfileUpdateRequest, RegisterRequest, User, normalize_email
from security import hash_password, verify_password

logger = logging.getLogger(__name__)


def new_verification_token() -> Tuple[str, Any]:
    return secrets.token_hex(32), utcnow() + timedelta(hours=VERIFICATION_TOKEN_TTL_HOURS)


def register_user(db: Database, body: RegisterRequest, role: str = "user") -> Tuple[Dict[str, Any], str, int]:
    """
    Create an account. Returns ``(user, verification_token, linked_orders)``.

    When a guest record exists for the e-mail its name, phone and address
    become the defaults for the new account and its orders move over.
    """
    email = normalize_email(body.email)
    if db["user"].find_one({"email": email}, {"_id": 1}):
        raise ConflictError("User already exists with this email. Please login instead.")

    guest = find_guest(db, email)
    name = body.name or (guest or {}).get("name")
    if not name:
        raise ValidationError.for_field("name", "Name is required")
    address = body.address or (Address(**guest["address"]) if guest and guest.get("address") else None)

    token, expires = new_verification_token()
    user = User(
        name=name,
        email=email,
        password_hash=hash_password(body.password),
        phone=body.phone or (guest or {}).get("phone"),
        address=address,
        role=role,
        verification_token=token,
        verification_token_expires=expires,
    )
    try:
        uid = create_document(db, "user", user.model_dump())
    except DuplicateKeyError:
        raise ConflictError("User already exists with this email. Please login instead.")

    linked = migrate_guest(db, uid, email, guest)
    logger.info("Registered %s%s", email, " from guest checkout" if guest else "")
    return db["user"].find_one({"_id": parse_object_id(uid)}), token, linked


def authenticate(db: Database, email: str, password: str) -> Dict[str, Any]:
    user = db["user"].find_one({"email": normalize_email(email)})
    if not user or not user.get("password_hash") or not verify_password(password, user["password_hash"]):
        raise AuthenticationError("Invalid email or password")
    return user


def verify_email(db: Database, email: str, token: str) -> Dict[str, Any]:
    user = db["user"].find_one_and_update(
        {
            "email": normalize_email(email),
            "verification_token": token,
            "verification_token_expires": {"$gt": utcnow()},
        },
        {"$set": {"is_verified": True, "verification_token": None,
                  "verification_token_expires": None, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise ValidationError.for_field("token", "Invalid or expired verification link")
    return user


def refresh_verification(db: Database, email: str) -> Optional[Tuple[Dict[str, Any], str]]:
    """Issue a new token for an unverified account; ``None`` when there is nothing to send."""
    token, expires = new_verification_token()
    user = db["user"].find_one_and_update(
        {"email": normalize_email(email), "is_verified": {"$ne": True}},
        {"$set": {"verification_token": token, "verification_token_expires": expires, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        return None
    return user, token


def update_profile(db: Database, user: Dict[str, Any], body: ProfileUpdateRequest) -> Dict[str, Any]:
    changes = body.model_dump(exclude_none=True, exclude={"password"})
    if body.password:
        changes["password_hash"] = hash_password(body.password)
    if not changes:
        return user
    changes["updated_at"] = utcnow()
    return db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )


def list_users(db: Database) -> List[Dict[str, Any]]:
    return [doc_to_public(u) for u in db["user"].find({}, sort=[("created_at", DESCENDING)])]


def delete_user(db: Database, user_id: str) -> None:
    res = db["user"].delete_one({"_id": parse_object_id(user_id, "User")})
    if res.deleted_count == 0:
        raise NotFoundError("User not found")


def update_role(db: Database, user_id: str, role: str) -> Dict[str, Any]:
    if role not in ("user", "admin"):
        raise ValidationError.for_field("role", "Role must be 'user' or 'admin'")
    user = db["user"].find_one_and_update(
        {"_id": parse_object_id(user_id, "User")},
        {"$set": {"role": role, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFoundError("User not found")
    return user


def seed_admin(db: Database, email: Optional[str], password: Optional[str]) -> bool:
    """Create the bootstrap admin account if it does not exist yet."""
    if not email or not password:
        return False
    email = normalize_email(email)
    if db["user"].find_one({"email": email}, {"_id": 1}):
        return False
    admin = User(
        name="Admin",
        email=email,
        password_hash=hash_password(password),
        role="admin",
        is_verified=True,
    )
    create_document(db, "user", admin.model_dump())
    logger.info("Created admin account %s", email)
    return True
