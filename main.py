import logging
import math
import os
import re
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm

import config
import database
from best_sellers import add_best_seller, get_best_sellers, remove_best_seller, update_best_seller_order
from catalog import check_selection_codes, clean_stored_variants, describe, load_catalog, prepare_product
from codes import color_key
from database import create_document, get_db, get_documents, now, parse_object_id, serialize
from errors import InsufficientStockError, NotFoundError, StoreError, ValidationError
from errors import store_error_handler, unhandled_error_handler
from orders import (
    cancel_order,
    create_order,
    delete_order,
    find_product,
    get_order,
    list_orders,
    mark_delivered,
    mark_paid,
    mark_shipped,
    resolve_lines,
    user_orders,
)
from payments import get_gateway, handle_webhook, start_checkout, sync_session
from schemas import (
    BestSellerOrderIn,
    CartItem,
    CartItemIn,
    CheckoutIn,
    OrderCreate,
    ProductCreate,
    ProductUpdate,
    Selection,
    Token,
    User,
    UserCreate,
    UserOut,
    validate_document,
)
from security import create_access_token, get_current_user, get_password_hash, require_admin, verify_password

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="S.phone API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(StoreError, store_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "firstname": user.get("firstname", ""),
        "lastname": user.get("lastname", ""),
        "email": user["email"],
        "phone": user.get("phone"),
        "role": user.get("role", "user"),
    }


# Routes
@app.get("/")
def root():
    return {"message": "S.phone API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is not None:
        response["database_name"] = database.db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            logger.warning("Database health check failed: %s", e)
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    response["database_url"] = "✅ Set" if config.DATABASE_URL else "❌ Not Set"
    return response


# Auth endpoints
@app.post("/auth/register", response_model=Token)
def register(payload: UserCreate, db=Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")

    doc = validate_document(User, {
        "firstname": payload.firstname,
        "lastname": payload.lastname,
        "email": email,
        "phone": payload.phone,
        "passwordHash": get_password_hash(payload.password),
        "role": "user",
    })
    user_id = create_document(db, "user", doc)
    user = db["user"].find_one({"_id": parse_object_id(user_id)})
    logger.info("User %s registered", user_id)
    return {"access_token": create_access_token(user_id), "user": public_user(user)}


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = db["user"].find_one({"email": form_data.username.strip().lower()})
    if not user or not verify_password(form_data.password, user.get("passwordHash", "")):
        raise HTTPException(
            status_code=401,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    access_token = create_access_token(user["_id"])
    return {"access_token": access_token, "token_type": "bearer", "user": public_user(user)}


@app.get("/auth/profile", response_model=UserOut)
def profile(user=Depends(get_current_user)):
    return public_user(user)


# Product endpoints
SORTS = {
    "price_asc": (lambda p: (p["displayPrice"] is None, p["displayPrice"] or 0), False),
    "price_desc": (lambda p: p["displayPrice"] or 0, True),
    "name_asc": (lambda p: p.get("name", "").lower(), False),
    "name_desc": (lambda p: p.get("name", "").lower(), True),
}


@app.get("/products")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    minPrice: Optional[float] = None,
    maxPrice: Optional[float] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 12,
    db=Depends(get_db),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    filter_q = {}
    if category:
        filter_q["category"] = category
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filter_q["$or"] = [{"name": pattern}, {"description": pattern}]

    items = [describe(p) for p in db["product"].find(filter_q).sort("createdAt", -1)]
    # Price bounds apply to the derived display price
    if minPrice is not None:
        items = [p for p in items if p["displayPrice"] is not None and p["displayPrice"] >= minPrice]
    if maxPrice is not None:
        items = [p for p in items if p["displayPrice"] is not None and p["displayPrice"] <= maxPrice]
    if sort in SORTS:
        key, reverse = SORTS[sort]
        items.sort(key=key, reverse=reverse)

    total = len(items)
    start = (page - 1) * limit
    products = [serialize(p) for p in items[start:start + limit]]
    return {
        "count": len(products),
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit) if total else 0,
        "products": products,
    }


@app.get("/products/best-sellers/list")
def list_best_sellers(db=Depends(get_db)):
    products, mode = get_best_sellers(db["product"])
    return {"mode": mode, "count": len(products), "products": [serialize(describe(p)) for p in products]}


@app.put("/products/best-sellers/add/{product_id}", dependencies=[Depends(require_admin)])
def pin_best_seller(product_id: str, db=Depends(get_db)):
    return serialize(add_best_seller(db["product"], product_id))


@app.put("/products/best-sellers/remove/{product_id}", dependencies=[Depends(require_admin)])
def unpin_best_seller(product_id: str, db=Depends(get_db)):
    return serialize(remove_best_seller(db["product"], product_id))


@app.put("/products/best-sellers/order/{product_id}", dependencies=[Depends(require_admin)])
def move_best_seller(product_id: str, payload: BestSellerOrderIn, db=Depends(get_db)):
    return serialize(update_best_seller_order(db["product"], product_id, payload.order))


@app.post("/products/maintenance/clean-variants", dependencies=[Depends(require_admin)])
def clean_variants(db=Depends(get_db)):
    modified, removed = clean_stored_variants(db["product"])
    return {"productsModified": modified, "variantsRemoved": removed}


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return serialize(describe(find_product(db["product"], product_id)))


@app.get("/products/{product_id}/quote")
def quote_product(
    product_id: str,
    storage: Optional[str] = None,
    condition: Optional[str] = None,
    color: Optional[str] = None,
    db=Depends(get_db),
):
    selection = Selection(storage=storage, condition=condition, color=color)
    check_selection_codes(selection)
    product = find_product(db["product"], product_id)
    resolution = load_catalog(product).resolve(selection)
    return {
        "unitPrice": resolution.unit_price,
        "availableStock": resolution.available_stock,
        "purchasable": resolution.purchasable,
        "color": resolution.color,
    }


@app.post("/products", dependencies=[Depends(require_admin)])
def create_product(payload: ProductCreate, db=Depends(get_db)):
    data = payload.model_dump(by_alias=True, exclude_unset=True)
    if not data.get("variants") and not data.get("conditions") and not data.get("price"):
        raise ValidationError("A product needs a price, variants or conditions")
    doc = prepare_product(data)
    pid = create_document(db, "product", doc)
    logger.info("Product %s created (%s)", pid, doc["name"])
    return serialize(describe(db["product"].find_one({"_id": parse_object_id(pid)})))


@app.put("/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db)):
    existing = find_product(db["product"], product_id)
    updates = payload.model_dump(by_alias=True, exclude_unset=True)
    doc = prepare_product(updates, existing)
    # Only written fields go back; stock and soldCount may have moved since the read
    changes = {k: doc[k] for k in updates if k in doc}
    if "variants" in updates:
        changes["availableStorages"] = doc["availableStorages"]
        changes["conditions"] = doc["conditions"]
    changes["updatedAt"] = now()
    db["product"].update_one({"_id": existing["_id"]}, {"$set": changes})
    return serialize(describe(db["product"].find_one({"_id": existing["_id"]})))


@app.delete("/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, db=Depends(get_db)):
    product = find_product(db["product"], product_id)
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Product %s deleted", product_id)
    return {"status": "deleted"}


# Cart endpoints (per-user)
@app.get("/cart")
def get_cart(user=Depends(get_current_user), db=Depends(get_db)):
    items = get_documents(db, "cartitem", {"user": str(user["_id"])})
    return [serialize(it) for it in items]


@app.post("/cart")
def add_to_cart(payload: CartItemIn, user=Depends(get_current_user), db=Depends(get_db)):
    line = resolve_lines(db["product"], [payload])[0]
    user_id = str(user["_id"])
    storage = line.selection.storage if line.kind == "variants" else None
    condition = line.selection.condition if line.kind != "flat" else None
    color = line.resolution.color

    existing = None
    for item in db["cartitem"].find({"user": user_id, "product": payload.product_id,
                                     "storage": storage, "condition": condition}):
        if color_key(item.get("color")) == color_key(color):
            existing = item
            break

    if existing:
        quantity = existing["quantity"] + payload.quantity
        if quantity > line.resolution.available_stock:
            raise InsufficientStockError(
                f"Insufficient stock for {line.name}. Available stock: {line.resolution.available_stock}"
            )
        db["cartitem"].update_one(
            {"_id": existing["_id"]},
            {"$set": {"quantity": quantity, "price": line.resolution.unit_price, "updatedAt": now()}},
        )
        return serialize(db["cartitem"].find_one({"_id": existing["_id"]}))

    doc = validate_document(CartItem, {
        "user": user_id,
        "product": payload.product_id,
        "name": line.name,
        "quantity": payload.quantity,
        "price": line.resolution.unit_price,
        "storage": storage,
        "condition": condition,
        "color": color,
    })
    item_id = create_document(db, "cartitem", doc)
    return serialize(db["cartitem"].find_one({"_id": parse_object_id(item_id)}))


@app.delete("/cart/{item_id}")
def remove_from_cart(item_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    try:
        oid = parse_object_id(item_id, "Cart item")
    except NotFoundError:
        oid = None
    doc = db["cartitem"].find_one({"_id": oid, "user": str(user["_id"])}) if oid else None
    if not doc:
        raise HTTPException(status_code=404, detail="Cart item not found")
    db["cartitem"].delete_one({"_id": doc["_id"]})
    return {"status": "removed"}


# Orders
@app.post("/orders", status_code=201)
def place_order(payload: OrderCreate, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(create_order(db, user, payload))


@app.get("/orders/my")
def my_orders(user=Depends(get_current_user), db=Depends(get_db)):
    return [serialize(o) for o in user_orders(db, user)]


@app.get("/orders", dependencies=[Depends(require_admin)])
def all_orders(status: Optional[str] = None, page: int = 1, limit: int = 20, db=Depends(get_db)):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    orders, total = list_orders(db, status, page, limit)
    return {
        "count": len(orders),
        "total": total,
        "page": page,
        "totalPages": math.ceil(total / limit) if total else 0,
        "orders": [serialize(o) for o in orders],
    }


@app.get("/orders/{order_id}")
def read_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(get_order(db, order_id, user))


@app.put("/orders/{order_id}/pay")
def pay_order(
    order_id: str,
    payment_result: Optional[Dict[str, Any]] = Body(None),
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    return serialize(mark_paid(db, order_id, user, payment_result or {}))


@app.put("/orders/{order_id}/ship", dependencies=[Depends(require_admin)])
def ship_order(order_id: str, db=Depends(get_db)):
    return serialize(mark_shipped(db, order_id))


@app.put("/orders/{order_id}/deliver", dependencies=[Depends(require_admin)])
def deliver_order(order_id: str, db=Depends(get_db)):
    return serialize(mark_delivered(db, order_id))


@app.put("/orders/{order_id}/cancel")
def cancel(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(cancel_order(db, order_id, user))


@app.delete("/orders/{order_id}")
def remove_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    delete_order(db, order_id, user)
    return {"status": "deleted"}


# Payment gateway
@app.post("/payment/create-checkout-session")
def create_checkout_session(
    payload: CheckoutIn,
    user=Depends(get_current_user),
    db=Depends(get_db),
    gateway=Depends(get_gateway),
):
    return start_checkout(db, gateway, user, payload)


@app.get("/payment/session/{session_id}")
def read_checkout_session(
    session_id: str,
    user=Depends(get_current_user),
    db=Depends(get_db),
    gateway=Depends(get_gateway),
):
    session, order = sync_session(db, gateway, user, session_id)
    return {"session": session.summary(), "order": serialize(order)}


@app.post("/payment/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    db=Depends(get_db),
    gateway=Depends(get_gateway),
):
    payload = await request.body()
    handle_webhook(db, gateway, payload, stripe_signature)
    return {"received": True}


# Demo catalog with one product per pricing shape (admin only)
SEED_PRODUCTS = [
    {
        "name": "iPhone 13",
        "description": "Smartphone Apple iPhone 13, écran Super Retina XDR 6,1 pouces.",
        "category": "phones",
        "brand": "Apple",
        "model": "iPhone 13",
        "variants": {
            "128": {
                "etat_parfait": {"price": 449, "publicPrice": 689, "colors": [{"name": "Noir", "stock": 4}, {"name": "Bleu", "stock": 2}]},
                "tres_bon_etat": {"price": 409, "colors": [{"name": "Noir", "stock": 3}]},
            },
            "256": {
                "neuf_sous_blister": {"price": 629, "colors": [{"name": "Rose", "stock": 1}]},
            },
        },
    },
    {
        "name": "Samsung Galaxy S21",
        "description": "Samsung Galaxy S21 5G reconditionné, 128 Go.",
        "category": "phones",
        "brand": "Samsung",
        "conditions": {
            "perfect": {"price": 329, "stock": 5, "colors": ["Gris", "Violet"]},
            "good": {"price": 289, "stock": 3, "colors": ["Gris"]},
        },
    },
    {
        "name": "Coque silicone MagSafe",
        "description": "Coque en silicone compatible MagSafe pour iPhone 13.",
        "category": "cases",
        "brand": "Apple",
        "price": 29.9,
        "stock": 25,
        "colors": ["Noir", "Bleu nuit"],
    },
]


@app.post("/seed", dependencies=[Depends(require_admin)])
def seed(db=Depends(get_db)):
    created = 0
    for p in SEED_PRODUCTS:
        if not db["product"].find_one({"name": p["name"]}):
            create_document(db, "product", prepare_product(p))
            created += 1
    logger.info("Seeded %d demo product(s)", created)
    return {"status": "ok", "created": created}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
