"""
Store-wide settings, kept in a single document keyed ``"global"``.

The default delivery price is used by checkout only when the caller leaves
the delivery price out entirely.
"""

import logging
import math
from typing import Any, Dict

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import utcnow
from errors import ValidationError
from schemas import Settings

logger = logging.getLogger(__name__)

SETTINGS_ID = "global"


def get_settings(db: Database) -> Dict[str, Any]:
    """Return the settings document, creating it with defaults on first access."""
    now = utcnow()
    return db["settings"].find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$setOnInsert": {**Settings().model_dump(), "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def get_default_delivery_price(db: Database) -> float:
    return float(get_settings(db).get("default_delivery_price") or 0)


def validate_delivery_price(value: Any, field: str = "default_delivery_price") -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError.for_field(field, "Delivery price must be a number")
    if not math.isfinite(value) or value < 0:
        raise ValidationError.for_field(field, "Invalid delivery price")
    return float(value)


def set_default_delivery_price(db: Database, value: Any, apply_to_existing: bool = False) -> Dict[str, Any]:
    """
    Update the default delivery price.

    With ``apply_to_existing`` every stored order is rewritten one at a time:
    ``delivery_price`` is replaced and ``total_price`` recomputed from the
    order's own ``items_price``. This pass is best-effort and NOT atomic; a
    failure part-way leaves the earlier orders updated and the rest untouched.
    The returned ``applied`` block reports both counts so callers can retry.
    """
    price = validate_delivery_price(value)
    get_settings(db)
    settings = db["settings"].find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$set": {"default_delivery_price": price, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )

    result: Dict[str, Any] = {"settings": settings}
    if apply_to_existing:
        result["applied"] = apply_delivery_price_to_orders(db, price)
    return result


def apply_delivery_price_to_orders(db: Database, price: float) -> Dict[str, Any]:
    updated = 0
    failed = []
    for order in db["order"].find({}, {"items_price": 1}):
        try:
            items_price = float(order.get("items_price") or 0)
            db["order"].update_one(
                {"_id": order["_id"]},
                {"$set": {
                    "delivery_price": price,
                    "total_price": items_price + price,
                    "updated_at": utcnow(),
                }},
            )
            updated += 1
        except PyMongoError as exc:
            logger.warning("Could not apply delivery price to order %s: %s", order["_id"], exc)
            failed.append({"order_id": str(order["_id"]), "error": str(exc)})
    if failed:
        logger.warning("Delivery price applied to %d orders, %d failed", updated, len(failed))
    return {"updated": updated, "failed": len(failed), "failures": failed}
