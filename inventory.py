"""
Cart validation and stock reservation.

Validation reads every product up front and rejects the cart before anything
is written. Reservation then decrements stock with one conditional write per
product (``stock >= quantity`` is part of the filter), so two checkouts racing
for the last unit cannot both succeed even though both passed validation.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import parse_object_id, utcnow
from errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError, VariantRequiredError
from schemas import CartLine

logger = logging.getLogger(__name__)


@dataclass
class ValidatedLine:
    line: CartLine
    product: Dict[str, Any]

    @property
    def product_oid(self) -> ObjectId:
        return self.product["_id"]


def validate_cart(db: Database, lines: List[CartLine]) -> List[ValidatedLine]:
    if not lines:
        raise ValidationError.for_field("order_items", "No order items provided")

    oids = [parse_object_id(line.product_id, "Product") for line in lines]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": list(set(oids))}})}

    # The same product may appear on several lines (different sizes), stock covers the sum.
    requested: Dict[ObjectId, int] = {}
    validated = []
    for line, oid in zip(lines, oids):
        product = products.get(oid)
        if product is None:
            raise NotFoundError(f"Product not found: {line.product_id}")

        name = product.get("name", line.product_id)
        requested[oid] = requested.get(oid, 0) + line.quantity
        available = int(product.get("stock") or 0)
        if available < requested[oid]:
            raise InsufficientStockError(str(oid), name, requested[oid], available)

        if product.get("sizes") and not line.selected_size:
            raise VariantRequiredError(str(oid), name, "size")
        if product.get("colors") and not line.selected_color:
            raise VariantRequiredError(str(oid), name, "color")

        validated.append(ValidatedLine(line=line, product=product))
    return validated


def quantities_by_product(lines: List[ValidatedLine]) -> "OrderedDict[ObjectId, int]":
    wanted: "OrderedDict[ObjectId, int]" = OrderedDict()
    for v in lines:
        wanted[v.product_oid] = wanted.get(v.product_oid, 0) + v.line.quantity
    return wanted


def reserve_stock(db: Database, lines: List[ValidatedLine]) -> Dict[ObjectId, int]:
    """
    Decrement stock for every product in the cart, all or nothing.

    Returns the reserved quantities so the caller can hand them back to
    ``release_stock`` if a later step fails. Raises ``ConflictError`` when a
    concurrent order took the stock after validation.
    """
    names = {v.product_oid: v.product.get("name", str(v.product_oid)) for v in lines}
    reserved: Dict[ObjectId, int] = {}
    for oid, qty in quantities_by_product(lines).items():
        taken = db["product"].find_one_and_update(
            {"_id": oid, "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty}, "$set": {"updated_at": utcnow()}},
            projection={"_id": 1},
        )
        if taken is None:
            release_stock(db, reserved)
            raise ConflictError(
                f"Insufficient stock for product: {names[oid]}",
                [{"field": "product_id", "product_id": str(oid), "requested": qty}],
            )
        reserved[oid] = qty
    return reserved


def release_stock(db: Database, reserved: Dict[ObjectId, int]) -> None:
    for oid, qty in reserved.items():
        try:
            db["product"].update_one({"_id": oid}, {"$inc": {"stock": qty}, "$set": {"updated_at": utcnow()}})
        except PyMongoError:
            logger.error("Could not return %d units to product %s", qty, oid, exc_info=True)
        else:
            logger.warning("Returned %d units to product %s after a failed checkout", qty, oid)
