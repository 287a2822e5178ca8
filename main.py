import logging
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr
from pymongo.database import Database

import accounts
import catalog
import notifications
import orders
import profit
import purchases
import reports
import settings_resolver
from config import ADMIN_EMAIL, ADMIN_PASSWORD, CORS_ORIGINS, LOG_LEVEL, PORT
from database import doc_to_public, ensure_indexes, get_db
from errors import StorefrontError
from notifications import Notifier, get_notifier
from schemas import (
    BulkCostPriceUpdate,
    CostPriceUpdate,
    DeliveryPriceUpdate,
    OrderCreateRequest,
    OrderUpdateRequest,
    ProductCreateRequest,
    ProductUpdateRequest,
    ProfileUpdateRequest,
    PurchaseCreateRequest,
    PurchaseUpdateRequest,
    RegisterRequest,
    Role,
)
from security import create_access_token, get_current_admin, get_current_user, get_optional_user, is_admin

# ----------------------------------------------------------------------------
# App Setup
# ----------------------------------------------------------------------------

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront Back-office API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": "Validation failed", "errors": errors})


# ----------------------------------------------------------------------------
# Models (request/response bodies used only by routes)
# ----------------------------------------------------------------------------

class TokenResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ResendVerificationRequest(BaseModel):
    email: EmailStr


class RoleUpdateRequest(BaseModel):
    role: Role


def token_response(user: Dict[str, Any]) -> TokenResponse:
    return TokenResponse(
        id=str(user["_id"]),
        name=user["name"],
        email=user["email"],
        role=user.get("role", "user"),
        access_token=create_access_token({"sub": str(user["_id"])}),
    )


# ----------------------------------------------------------------------------
# Accounts
# ----------------------------------------------------------------------------

@app.post("/api/users/register", status_code=201)
def register(
    body: RegisterRequest,
    tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    user, token, linked = accounts.register_user(db, body)
    notifications.account_created(tasks, notifier, doc_to_public(user), token)
    return {
        **token_response(user).model_dump(),
        "linked_orders": linked,
        "message": "Account created from guest checkout" if linked else "User registered successfully",
    }


@app.post("/api/users/login", response_model=TokenResponse)
def login(body: LoginRequest, db: Database = Depends(get_db)):
    return token_response(accounts.authenticate(db, body.email, body.password))


@app.get("/api/users/verify-email")
def verify_email(token: str, email: str, db: Database = Depends(get_db)):
    return {"verified": True, "user": doc_to_public(accounts.verify_email(db, email, token))}


@app.post("/api/users/resend-verification")
def resend_verification(
    body: ResendVerificationRequest,
    tasks: BackgroundTasks,
    db: Database = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    refreshed = accounts.refresh_verification(db, body.email)
    if refreshed:
        user, token = refreshed
        notifications.account_created(tasks, notifier, doc_to_public(user), token)
    # same answer either way so the endpoint does not reveal which accounts exist
    return {"message": "If the account exists and is unverified, a new link has been sent"}


@app.get("/api/users/profile")
def get_profile(current=Depends(get_current_user)):
    return doc_to_public(current)


@app.put("/api/users/profile")
def update_profile(body: ProfileUpdateRequest, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return doc_to_public(accounts.update_profile(db, current, body))


@app.get("/api/users")
def list_users(user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return accounts.list_users(db)


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    accounts.delete_user(db, user_id)
    return {"deleted": True}


@app.put("/api/users/{user_id}/role")
def update_user_role(user_id: str, body: RoleUpdateRequest, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return doc_to_public(accounts.update_role(db, user_id, body.role))


# ----------------------------------------------------------------------------
# Products
# ----------------------------------------------------------------------------

@app.get("/api/products")
def list_products(
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    featured: Optional[bool] = Query(None),
    sort: Optional[str] = Query(None, description="price-asc|price-desc|name|newest"),
    page: int = 1,
    limit: int = 12,
    current=Depends(get_optional_user),
    db: Database = Depends(get_db),
):
    return catalog.list_products(
        db,
        include_hidden=is_admin(current),
        category=category,
        search=search,
        min_price=min_price,
        max_price=max_price,
        featured=featured,
        sort=sort,
        page=page,
        limit=limit,
    )


@app.get("/api/products/{product_id}")
def get_product(product_id: str, current=Depends(get_optional_user), db: Database = Depends(get_db)):
    return catalog.get_product(db, product_id, include_hidden=is_admin(current))


@app.post("/api/products", status_code=201)
def create_product(body: ProductCreateRequest, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return catalog.create_product(db, body)


@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateRequest, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return catalog.update_product(db, product_id, body)


@app.put("/api/products/{product_id}/visibility")
def toggle_visibility(product_id: str, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return catalog.toggle_flag(db, product_id, "is_hidden")


@app.put("/api/products/{product_id}/featured")
def toggle_featured(product_id: str, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return catalog.toggle_flag(db, product_id, "featured")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    catalog.delete_product(db, product_id)
    return {"deleted": True}


# ----------------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------------

@app.post("/api/orders", status_code=201)
def create_order(
    body: OrderCreateRequest,
    tasks: BackgroundTasks,
    current=Depends(get_optional_user),
    db: Database = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    order = orders.create_order(db, body, current)
    notifications.order_created(tasks, notifier, db, order)
    return order


@app.get("/api/orders/myorders")
def my_orders(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.list_my_orders(db, current)


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return orders.get_order(db, order_id, current)


@app.get("/api/orders")
def list_orders(status: Optional[str] = Query(None), user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return orders.list_orders(db, status)


@app.put("/api/orders/{order_id}")
def update_order(
    order_id: str,
    body: OrderUpdateRequest,
    tasks: BackgroundTasks,
    user=Depends(get_current_admin),
    db: Database = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    order, previous_status = orders.update_order(db, order_id, body)
    notifications.order_status_changed(tasks, notifier, order, previous_status)
    return order


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    orders.delete_order(db, order_id)
    return {"deleted": True}


# ----------------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------------

@app.get("/api/settings/delivery-price")
def get_delivery_price(db: Database = Depends(get_db)):
    return {"default_delivery_price": settings_resolver.get_default_delivery_price(db)}


@app.get("/api/settings")
def get_settings(user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return doc_to_public(settings_resolver.get_settings(db))


@app.put("/api/settings/delivery-price")
def update_delivery_price(body: DeliveryPriceUpdate, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    result = settings_resolver.set_default_delivery_price(db, body.default_delivery_price, body.apply_to_all_orders)
    return {**result, "settings": doc_to_public(result["settings"])}


# ----------------------------------------------------------------------------
# Profit & Inventory Purchases
# ----------------------------------------------------------------------------

@app.get("/api/profit/stats")
def profit_stats(
    period: Optional[str] = Query(None, description="lastWeek|lastMonth|lastYear|allTime"),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    user=Depends(get_current_admin),
    db: Database = Depends(get_db),
):
    return reports.profit_stats(db, period=period, start=start_date, end=end_date)


@app.get("/api/profit/products")
def products_with_cost(user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return profit.products_with_cost(db)


@app.put("/api/profit/products/bulk-cost")
def bulk_update_cost(body: BulkCostPriceUpdate, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return profit.bulk_update_cost_prices(db, body.updates)


@app.put("/api/profit/products/{product_id}/cost")
def update_cost(product_id: str, body: CostPriceUpdate, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return doc_to_public(profit.update_cost_price(db, product_id, body.cost_price))


@app.get("/api/inventory-purchases")
def list_purchases(
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    user=Depends(get_current_admin),
    db: Database = Depends(get_db),
):
    return purchases.list_purchases(db, start_date, end_date)


@app.post("/api/inventory-purchases", status_code=201)
def create_purchase(body: PurchaseCreateRequest, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return purchases.create_purchase(db, body)


@app.put("/api/inventory-purchases/{purchase_id}")
def update_purchase(purchase_id: str, body: PurchaseUpdateRequest, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return purchases.update_purchase(db, purchase_id, body)


@app.delete("/api/inventory-purchases/{purchase_id}")
def delete_purchase(purchase_id: str, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    purchases.delete_purchase(db, purchase_id)
    return {"deleted": True}


# ----------------------------------------------------------------------------
# Health and Startup Hook
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    try:
        db.command("ping")
        return {"backend": "ok", "db": "ok"}
    except Exception as e:
        return {"backend": "ok", "db": f"error: {e}"}


@app.on_event("startup")
def on_startup():
    db = app.dependency_overrides.get(get_db, get_db)()
    try:
        ensure_indexes(db)
        accounts.seed_admin(db, ADMIN_EMAIL, ADMIN_PASSWORD)
    except Exception:
        # The API still serves; index creation is retried on the next start.
        logger.exception("Startup database preparation failed")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
