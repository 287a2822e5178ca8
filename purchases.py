from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import as_naive_utc, create_document, doc_to_public, get_documents, parse_object_id, utcnow
from errors import NotFoundError, ValidationError
from reports import date_range
from schemas import InventoryPurchase, PurchaseCreateRequest, PurchaseUpdateRequest


def list_purchases(db: Database, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
    docs = get_documents(db, "inventory_purchase", date_range("date", start, end), sort=[("date", DESCENDING)])
    return {
        "purchases": [doc_to_public(d) for d in docs],
        "total": sum(d.get("amount") or 0 for d in docs),
    }


def create_purchase(db: Database, body: PurchaseCreateRequest) -> Dict[str, Any]:
    purchase = InventoryPurchase(
        amount=body.amount,
        date=as_naive_utc(body.date) or utcnow(),
        supplier=body.supplier,
        note=body.note,
    )
    pid = create_document(db, "inventory_purchase", purchase.model_dump())
    return doc_to_public(db["inventory_purchase"].find_one({"_id": parse_object_id(pid)}))


def update_purchase(db: Database, purchase_id: str, body: PurchaseUpdateRequest) -> Dict[str, Any]:
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise ValidationError("Nothing to update")
    if "date" in changes:
        changes["date"] = as_naive_utc(changes["date"])
    changes["updated_at"] = utcnow()
    doc = db["inventory_purchase"].find_one_and_update(
        {"_id": parse_object_id(purchase_id, "Purchase")},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not doc:
        raise NotFoundError("Purchase not found")
    return doc_to_public(doc)


def delete_purchase(db: Database, purchase_id: str) -> None:
    res = db["inventory_purchase"].delete_one({"_id": parse_object_id(purchase_id, "Purchase")})
    if res.deleted_count == 0:
        raise NotFoundError("Purchase not found")
