"""
Order assembly and order lifecycle.

``create_order`` is the checkout unit of work. Each write it performs has an
undo step, run in reverse when a later write fails:

    guest upsert      -> release_guest
    stock reservation -> release_stock
    order insert      (last; nothing after it can fail the checkout)

A guest order is re-checked after the insert, because a registration or another
checkout's release may have removed its guest in the meantime.

Notifications are not part of the unit; the route emits them once the order
is stored.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, doc_to_public, parse_object_id, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from identity import release_guest, resolve_order_owner, settle_guest_order
from inventory import release_stock, reserve_stock, validate_cart
from profit import order_totals, price_line
from schemas import Order, OrderCreateRequest, OrderUpdateRequest, PaymentInfo
from security import is_admin
from settings_resolver import get_default_delivery_price, validate_delivery_price

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}

# Client-side sums are rounded for display; anything further off is a bad cart.
ITEMS_PRICE_TOLERANCE = 0.01


def resolve_delivery_price(db: Database, requested: Optional[float]) -> float:
    """An explicit price (zero included) wins; only an absent one falls back to the default."""
    if requested is None:
        return get_default_delivery_price(db)
    return validate_delivery_price(requested, "delivery_price")


def create_order(db: Database, payload: OrderCreateRequest, caller: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    validated = validate_cart(db, payload.order_items)

    items = [price_line(v) for v in validated]
    totals = order_totals(items)
    if payload.items_price is not None and abs(payload.items_price - totals.items_price) > ITEMS_PRICE_TOLERANCE:
        raise ValidationError.for_field(
            "items_price",
            f"Items price {payload.items_price} does not match order lines ({totals.items_price})",
        )
    delivery_price = resolve_delivery_price(db, payload.delivery_price)

    payment = PaymentInfo(**payload.payment_info.model_dump()) if payload.payment_info else PaymentInfo()
    if payment.status == "paid":
        payment.paid_at = utcnow()

    owner = resolve_order_owner(db, payload.shipping_info, caller)
    order = Order(
        user_id=owner.user_id,
        order_items=items,
        shipping_info=payload.shipping_info,
        payment_info=payment,
        items_price=totals.items_price,
        delivery_price=delivery_price,
        total_price=totals.items_price + delivery_price,
        total_cost=totals.total_cost,
        total_profit=totals.total_profit,
        is_guest_order=owner.is_guest_order,
    )

    email = payload.shipping_info.email
    try:
        reserved = reserve_stock(db, validated)
    except Exception:
        release_guest(db, owner, email)
        raise

    try:
        order_id = create_document(db, "order", order.model_dump())
    except Exception:
        logger.error("Order insert failed for %s, rolling back stock", email, exc_info=True)
        release_stock(db, reserved)
        release_guest(db, owner, email)
        raise

    if owner.user_id is None:
        settle_guest_order(db, ObjectId(order_id), payload.shipping_info)

    logger.info(
        "Order %s created for %s (%d lines, total %.2f, guest=%s)",
        order_id, email, len(items), order.total_price, owner.is_guest_order,
    )
    return doc_to_public(db["order"].find_one({"_id": ObjectId(order_id)}))


def check_transition(current: str, new: str) -> None:
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValidationError.for_field("order_status", f"Cannot change order status from {current} to {new}")


def update_order(db: Database, order_id: str, changes: OrderUpdateRequest) -> Tuple[Dict[str, Any], str]:
    """Apply an admin edit. Returns the updated order and the status it had before."""
    oid = parse_object_id(order_id, "Order")
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise NotFoundError("Order not found")

    previous = order.get("order_status", "pending")
    now = utcnow()
    updates: Dict[str, Any] = {}

    if changes.order_status and changes.order_status != previous:
        check_transition(previous, changes.order_status)
        updates["order_status"] = changes.order_status
        if changes.order_status == "delivered":
            updates["delivered_at"] = now

    if changes.payment_status:
        updates["payment_info.status"] = changes.payment_status
        already_paid = (order.get("payment_info") or {}).get("status") == "paid"
        if changes.payment_status == "paid" and not already_paid:
            updates["payment_info.paid_at"] = now

    if changes.delivery_price is not None:
        delivery_price = validate_delivery_price(changes.delivery_price, "delivery_price")
        updates["delivery_price"] = delivery_price
        updates["total_price"] = float(order.get("items_price") or 0) + delivery_price

    if not updates:
        return doc_to_public(order), previous

    updates["updated_at"] = now
    match: Dict[str, Any] = {"_id": oid}
    if "order_status" in updates:
        # the transition was checked against `previous`; refuse if another edit moved it
        match["order_status"] = previous
    updated = db["order"].find_one_and_update(match, {"$set": updates}, return_document=ReturnDocument.AFTER)
    if updated is None:
        raise ConflictError("Order was modified by another request, reload and retry")
    return doc_to_public(updated), previous


def owns_order(order: Dict[str, Any], user: Dict[str, Any]) -> bool:
    if order.get("user_id") and order["user_id"] == str(user["_id"]):
        return True
    return (order.get("shipping_info") or {}).get("email") == user.get("email")


def get_order(db: Database, order_id: str, caller: Dict[str, Any]) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": parse_object_id(order_id, "Order")})
    if not order:
        raise NotFoundError("Order not found")
    if not is_admin(caller) and not owns_order(order, caller):
        raise AuthorizationError("Not authorized to view this order")
    return doc_to_public(order)


def list_my_orders(db: Database, caller: Dict[str, Any]) -> List[Dict[str, Any]]:
    # guest orders placed with the account's e-mail belong to it as well
    cursor = db["order"].find(
        {"$or": [{"user_id": str(caller["_id"])}, {"shipping_info.email": caller.get("email")}]},
        sort=[("created_at", DESCENDING)],
    )
    return [doc_to_public(o) for o in cursor]


def list_orders(db: Database, status: Optional[str] = None) -> Dict[str, Any]:
    query = {"order_status": status} if status else {}
    orders = [doc_to_public(o) for o in db["order"].find(query, sort=[("created_at", DESCENDING)])]
    return {
        "orders": orders,
        "total_orders": len(orders),
        "total_amount": sum(o.get("total_price") or 0 for o in orders),
        "total_delivery_revenue": sum(o.get("delivery_price") or 0 for o in orders),
    }


def delete_order(db: Database, order_id: str) -> None:
    """Remove an order. Stock is not returned to the catalog."""
    res = db["order"].delete_one({"_id": parse_object_id(order_id, "Order")})
    if res.deleted_count == 0:
        raise NotFoundError("Order not found")
    logger.info("Order %s deleted", order_id)
