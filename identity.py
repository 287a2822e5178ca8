"""
Who owns an order.

Email, not session, is the durable customer key: an anonymous checkout whose
shipping email belongs to a registered account is attached to that account,
and anything else is tracked through a ``guest_user`` record until the email
registers.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import utcnow
from errors import ConflictError
from schemas import GuestUser, ShippingInfo, normalize_email

logger = logging.getLogger(__name__)


@dataclass
class OrderOwner:
    user_id: Optional[str]
    is_guest_order: bool
    # set only when this checkout inserted the guest record
    created_guest_id: Optional[ObjectId] = None


def resolve_order_owner(db: Database, shipping: ShippingInfo, caller: Optional[Dict[str, Any]]) -> OrderOwner:
    if caller:
        return OrderOwner(user_id=str(caller["_id"]), is_guest_order=False)

    email = normalize_email(shipping.email)
    user = db["user"].find_one({"email": email}, {"_id": 1})
    if user:
        return OrderOwner(user_id=str(user["_id"]), is_guest_order=True)

    guest, created = ensure_guest(db, shipping)
    return OrderOwner(user_id=None, is_guest_order=True, created_guest_id=guest["_id"] if created else None)


def ensure_guest(db: Database, shipping: ShippingInfo) -> Tuple[Dict[str, Any], bool]:
    """Upsert the guest record for the shipping email. Returns ``(guest, created)``."""
    email = normalize_email(shipping.email)
    guest = GuestUser(
        name=shipping.name,
        email=email,
        phone=shipping.contact_phone(),
        address=shipping.to_address(),
    )
    now = utcnow()
    created = False
    try:
        res = db["guest_user"].update_one(
            {"email": email},
            {"$setOnInsert": {**guest.model_dump(exclude={"email"}), "created_at": now, "updated_at": now}},
            upsert=True,
        )
        created = res.upserted_id is not None
    except DuplicateKeyError:
        # A concurrent checkout inserted the same email between our match and insert.
        logger.info("Guest record for %s created concurrently, re-reading", email)

    record = db["guest_user"].find_one({"email": email})
    if record is None:
        raise ConflictError(f"Could not create guest record for {email}")
    return record, created


def release_guest(db: Database, owner: OrderOwner, email: str) -> None:
    """Undo a guest insert made by a checkout that then failed."""
    if owner.created_guest_id is None:
        return
    # Another checkout may already have an order hanging off this guest.
    if db["order"].find_one({"shipping_info.email": normalize_email(email), "user_id": None}, {"_id": 1}):
        return
    db["guest_user"].delete_one({"_id": owner.created_guest_id})


def settle_guest_order(db: Database, order_id: ObjectId, shipping: ShippingInfo) -> Optional[str]:
    """
    Re-check ownership of a just-inserted guest order.

    Owner resolution happens before the insert, and in between a registration
    may have migrated and deleted the guest, or a failed checkout may have
    released it. Returns the user id the order was relinked to, if any.
    """
    email = normalize_email(shipping.email)
    user = db["user"].find_one({"email": email}, {"_id": 1})
    if user:
        user_id = str(user["_id"])
        db["order"].update_one(
            {"_id": order_id, "user_id": None},
            {"$set": {"user_id": user_id, "is_guest_order": False, "updated_at": utcnow()}},
        )
        logger.info("Order %s linked to user %s registered during checkout", order_id, user_id)
        return user_id
    ensure_guest(db, shipping)
    return None


def find_guest(db: Database, email: str) -> Optional[Dict[str, Any]]:
    return db["guest_user"].find_one({"email": normalize_email(email)})


def migrate_guest(db: Database, user_id: str, email: str, guest: Optional[Dict[str, Any]]) -> int:
    """
    Hand a guest's history to the account that just registered ``email``.

    Must run after the user document is inserted. Orders are re-pointed before
    the guest record is deleted, so every guest order stays reachable from
    either the new user or the guest at each step. Returns the number of
    orders re-pointed.
    """
    email = normalize_email(email)
    res = db["order"].update_many(
        {
            "shipping_info.email": email,
            "$or": [{"user_id": None}, {"is_guest_order": True}],
        },
        {"$set": {"user_id": user_id, "is_guest_order": False, "updated_at": utcnow()}},
    )
    if guest is not None:
        db["guest_user"].delete_one({"_id": guest["_id"]})
    if res.modified_count:
        logger.info("Linked %d guest orders to user %s", res.modified_count, user_id)
    return res.modified_count
