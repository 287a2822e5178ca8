"""
Profit reporting over stored orders and the inventory purchase ledger.

Everything is computed on request from the order lines' frozen cost and
profit figures; there are no running counters to keep in sync.
"""

import calendar
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import as_naive_utc, utcnow
from errors import ValidationError
from profit import profit_margin, top_products

PERIODS = ("lastWeek", "lastMonth", "lastYear", "allTime")


def months_ago(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_start(period: str, now: datetime) -> Optional[datetime]:
    if period == "lastWeek":
        return now - timedelta(days=7)
    if period == "lastMonth":
        return months_ago(now, 1)
    if period == "lastYear":
        return months_ago(now, 12)
    if period == "allTime":
        return None
    raise ValidationError.for_field("period", f"Unknown period: {period}")


def date_range(field: str, start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
    bounds: Dict[str, Any] = {}
    if start is not None:
        bounds["$gte"] = as_naive_utc(start)
    if end is not None:
        bounds["$lte"] = as_naive_utc(end)
    return {field: bounds} if bounds else {}


def summarize(orders: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    orders = list(orders)
    revenue = sum(o.get("total_price") or 0 for o in orders)
    cost = sum(o.get("total_cost") or 0 for o in orders)
    profit = sum(o.get("total_profit") or 0 for o in orders)
    items_sold = sum(i.get("quantity") or 0 for o in orders for i in (o.get("order_items") or []))
    return {
        "total_revenue": revenue,
        "total_cost": cost,
        "total_profit": profit,
        "profit_margin": profit_margin(profit, revenue),
        "total_orders": len(orders),
        "total_items_sold": items_sold,
        "top_products": top_products(orders),
    }


def _orders(db: Database, query: Dict[str, Any]) -> List[Dict[str, Any]]:
    return list(db["order"].find(query, sort=[("created_at", DESCENDING)]))


def _order_row(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(order["_id"]),
        "order_ref": str(order["_id"])[-6:].upper(),
        "created_at": order.get("created_at"),
        "total_price": order.get("total_price") or 0,
        "total_cost": order.get("total_cost") or 0,
        "total_profit": order.get("total_profit") or 0,
        "order_status": order.get("order_status"),
        "customer_name": (order.get("shipping_info") or {}).get("name") or "Guest",
        "items_count": len(order.get("order_items") or []),
    }


def profit_stats(
    db: Database,
    period: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Revenue, cost and profit for the requested window, plus net profit after
    inventory purchases made in the same window.

    ``period`` takes precedence over ``start``/``end``; with neither, the
    window is all time. The four named periods are always included under
    ``periods`` for comparison.
    """
    now = now or utcnow()
    if period:
        start, end = period_start(period, now), None
    elif start and end and as_naive_utc(start) > as_naive_utc(end):
        raise ValidationError.for_field("start_date", "start_date must not be after end_date")

    orders = _orders(db, date_range("created_at", start, end))
    stats = summarize(orders)

    purchases = db["inventory_purchase"].find(date_range("date", start, end), {"amount": 1})
    total_purchases = sum(p.get("amount") or 0 for p in purchases)

    periods = {}
    for name in PERIODS:
        periods[name] = summarize(_orders(db, date_range("created_at", period_start(name, now), None)))

    return {
        **stats,
        "total_inventory_purchases": total_purchases,
        "net_profit": stats["total_profit"] - total_purchases,
        "periods": periods,
        "orders": [_order_row(o) for o in orders],
    }
