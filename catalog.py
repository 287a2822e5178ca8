"""
Product catalog. Only what checkout and profit reporting rely on: products
carry price, cost basis, stock and variant lists; images are plain URLs.
"""

from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, doc_to_public, parse_object_id, utcnow
from errors import ConflictError, NotFoundError
from schemas import ProductCreateRequest, ProductUpdateRequest

SORTS = {
    "price-asc": ("price", ASCENDING),
    "price-desc": ("price", DESCENDING),
    "name": ("name", ASCENDING),
    "newest": ("created_at", DESCENDING),
}


def list_products(
    db: Database,
    include_hidden: bool = False,
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    featured: Optional[bool] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 12,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if not include_hidden:
        query["is_hidden"] = {"$ne": True}
    if category:
        query["category"] = category
    if featured is not None:
        query["featured"] = True if featured else {"$ne": True}
    if search:
        query["$or"] = [
            {"name": {"$regex": search, "$options": "i"}},
            {"description": {"$regex": search, "$options": "i"}},
        ]
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price

    total = db["product"].count_documents(query)
    field, direction = SORTS.get(sort or "newest", SORTS["newest"])
    page, limit = max(1, page), max(1, limit)
    cursor = db["product"].find(query).sort(field, direction).skip((page - 1) * limit).limit(limit)
    return {
        "items": [doc_to_public(p) for p in cursor],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
    }


def get_product(db: Database, product_id: str, include_hidden: bool = False) -> Dict[str, Any]:
    doc = db["product"].find_one({"_id": parse_object_id(product_id, "Product")})
    if not doc or (doc.get("is_hidden") and not include_hidden):
        raise NotFoundError("Product not found")
    return doc_to_public(doc)


def create_product(db: Database, body: ProductCreateRequest) -> Dict[str, Any]:
    pid = create_document(db, "product", body.model_dump())
    return get_product(db, pid, include_hidden=True)


def update_product(db: Database, product_id: str, body: ProductUpdateRequest) -> Dict[str, Any]:
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = utcnow()
    doc = db["product"].find_one_and_update(
        {"_id": parse_object_id(product_id, "Product")},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError("Product not found")
    return doc_to_public(doc)


def delete_product(db: Database, product_id: str) -> None:
    res = db["product"].delete_one({"_id": parse_object_id(product_id, "Product")})
    if res.deleted_count == 0:
        raise NotFoundError("Product not found")


def toggle_flag(db: Database, product_id: str, flag: str) -> Dict[str, Any]:
    """Flip a boolean product flag (``is_hidden`` or ``featured``)."""
    oid = parse_object_id(product_id, "Product")
    doc = db["product"].find_one({"_id": oid}, {flag: 1})
    if not doc:
        raise NotFoundError("Product not found")
    current = bool(doc.get(flag))
    updated = db["product"].find_one_and_update(
        {"_id": oid, flag: current} if current else {"_id": oid, flag: {"$ne": True}},
        {"$set": {flag: not current, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Product was modified by another request, reload and retry")
    return doc_to_public(updated)
