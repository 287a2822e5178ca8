"""
Cost and profit arithmetic.

Line figures are computed once, from the product's cost basis at the moment
the order is placed, and stored on the order. Nothing here ever re-reads a
product to recompute a historical order, so later cost-price edits leave past
profit untouched.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import parse_object_id, utcnow
from errors import NotFoundError, StorefrontError, ValidationError
from inventory import ValidatedLine
from schemas import CostPriceItem, OrderItem

logger = logging.getLogger(__name__)

TOP_PRODUCTS_LIMIT = 10


@dataclass
class OrderTotals:
    items_price: float
    total_cost: float
    total_profit: float


def cost_basis(product: Dict[str, Any]) -> float:
    return float(product.get("cost_price") or 0)


def price_line(validated: ValidatedLine) -> OrderItem:
    line, product = validated.line, validated.product
    unit_cost = cost_basis(product)
    return OrderItem(
        product_id=str(product["_id"]),
        name=product.get("name") or line.name or str(product["_id"]),
        quantity=line.quantity,
        price=line.price,
        cost_price=unit_cost,
        profit=(line.price - unit_cost) * line.quantity,
        image_url=product.get("image_url") or line.image_url,
        selected_size=line.selected_size,
        selected_color=line.selected_color,
    )


def line_cost(item: OrderItem) -> float:
    return item.cost_price * item.quantity


def order_totals(items: Iterable[OrderItem]) -> OrderTotals:
    items = list(items)
    return OrderTotals(
        items_price=sum(i.price * i.quantity for i in items),
        total_cost=sum(line_cost(i) for i in items),
        total_profit=sum(i.profit for i in items),
    )


def profit_margin(profit: float, revenue: float) -> float:
    if revenue <= 0:
        return 0
    return round(profit / revenue * 100, 2)


def top_products(orders: Iterable[Dict[str, Any]], limit: int = TOP_PRODUCTS_LIMIT) -> List[Dict[str, Any]]:
    """Rank products by the profit frozen into order lines."""
    by_product: Dict[str, Dict[str, Any]] = {}
    for order in orders:
        for item in order.get("order_items") or []:
            if not item or not item.get("name"):
                continue
            key = str(item.get("product_id") or "unknown")
            entry = by_product.setdefault(key, {
                "product_id": key,
                "product_name": item["name"],
                "quantity": 0,
                "revenue": 0.0,
                "cost": 0.0,
                "profit": 0.0,
            })
            qty = item.get("quantity") or 0
            entry["quantity"] += qty
            entry["revenue"] += (item.get("price") or 0) * qty
            entry["cost"] += (item.get("cost_price") or 0) * qty
            entry["profit"] += item.get("profit") or 0
    ranked = sorted(by_product.values(), key=lambda e: e["profit"], reverse=True)
    return ranked[:limit]


# ----------------------------------------------------------------------------
# Cost price maintenance
# ----------------------------------------------------------------------------

def _valid_cost(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
        raise ValidationError.for_field("cost_price", "Invalid cost price")
    return float(value)


def update_cost_price(db: Database, product_id: str, cost_price: Any) -> Dict[str, Any]:
    cost = _valid_cost(cost_price)
    product = db["product"].find_one_and_update(
        {"_id": parse_object_id(product_id, "Product")},
        {"$set": {"cost_price": cost, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise NotFoundError("Product not found")
    return product


def bulk_update_cost_prices(db: Database, updates: List[CostPriceItem]) -> Dict[str, Any]:
    results = []
    for u in updates:
        try:
            product = update_cost_price(db, u.product_id, u.cost_price)
            results.append({"product_id": u.product_id, "success": True, "cost_price": product["cost_price"]})
        except (StorefrontError, PyMongoError) as exc:
            results.append({"product_id": u.product_id, "success": False, "error": str(exc)})

    successful = sum(1 for r in results if r["success"])
    failed = len(results) - successful
    if failed:
        logger.warning("Bulk cost update: %d updated, %d failed", successful, failed)
    return {"successful": successful, "failed": failed, "results": results}


def products_with_cost(db: Database) -> List[Dict[str, Any]]:
    rows = []
    projection = {"name": 1, "price": 1, "cost_price": 1, "stock": 1, "category": 1, "image_url": 1}
    for p in db["product"].find({}, projection).sort("name", 1):
        price = float(p.get("price") or 0)
        cost = cost_basis(p)
        rows.append({
            "id": str(p["_id"]),
            "name": p.get("name"),
            "selling_price": price,
            "cost_price": cost,
            "profit": price - cost,
            "profit_margin": profit_margin(price - cost, price),
            "stock": p.get("stock", 0),
            "category": p.get("category"),
            "image_url": p.get("image_url"),
        })
    return rows
