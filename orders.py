"""
Order creation and lifecycle.

Status moves pending -> paid -> shipped -> delivered; pending orders may also
be cancelled. Every transition is a conditional update on the current status
so that concurrent callers (client polling and gateway webhook in particular)
cannot apply the same transition twice.
"""
import logging
from typing import List, Optional, Tuple

from pydantic import BaseModel
from pymongo import ReturnDocument

from catalog import Resolution, check_selection_codes, load_catalog
from database import create_document, now, parse_object_id
from errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    InvalidConditionError,
    NotFoundError,
    ValidationError,
)
from inventory import decrease, increase
from schemas import Order, OrderCreate, OrderItemIn, Selection, validate_document

logger = logging.getLogger(__name__)


class ResolvedLine(BaseModel):
    product: dict
    kind: str
    selection: Selection
    quantity: int
    resolution: Resolution

    @property
    def name(self) -> str:
        return self.product.get("name", "")


def find_product(products, product_id) -> dict:
    product = products.find_one({"_id": parse_object_id(product_id, "Product")})
    if not product:
        raise NotFoundError(f"Product not found: {product_id}")
    return product


def resolve_lines(products, items: List[OrderItemIn]) -> List[ResolvedLine]:
    """
    Price and check every requested line against the live catalog.

    Raises on the first line whose product is missing, whose selection does
    not exist or is incomplete, or whose quantity exceeds the available stock.
    """
    lines = []
    for item in items:
        check_selection_codes(item)
        product = find_product(products, item.product_id)
        catalog = load_catalog(product)
        resolution = catalog.resolve(item)
        name = product.get("name", item.product_id)
        if not resolution.purchasable:
            if catalog.kind == "variants":
                raise ValidationError(f"Choose a storage, a condition and a color for {name}")
            raise ValidationError(f"Choose a condition for {name}")
        if resolution.available_stock < item.quantity:
            raise InsufficientStockError(
                f"Insufficient stock for {name}. Available stock: {resolution.available_stock}"
            )
        lines.append(ResolvedLine(
            product=product,
            kind=catalog.kind,
            selection=Selection(storage=item.storage, condition=item.condition, color=item.color),
            quantity=item.quantity,
            resolution=resolution,
        ))
    return lines


def order_item(line: ResolvedLine) -> dict:
    """Snapshot of name and unit price taken when the order is placed."""
    images = line.product.get("images") or []
    return {
        "product": str(line.product["_id"]),
        "name": line.name,
        "quantity": line.quantity,
        "price": line.resolution.unit_price,
        "storage": line.selection.storage if line.kind == "variants" else None,
        "condition": line.selection.condition if line.kind != "flat" else None,
        "color": line.resolution.color,
        "image": images[0] if images else "",
    }


def item_selection(item: dict) -> Selection:
    return Selection(storage=item.get("storage"), condition=item.get("condition"), color=item.get("color"))


def reserve_stock(products, lines: List[ResolvedLine]):
    """Decrease stock line by line; undo the lines already taken if one fails."""
    done = []
    for line in lines:
        if not decrease(products, line.product, line.selection, line.quantity):
            for taken in reversed(done):
                increase(products, taken.product, taken.selection, taken.quantity, undo_sale=True)
            if done:
                logger.warning("Rolled back %d reserved line(s) after a stock race on %s", len(done), line.name)
            raise InsufficientStockError(f"Insufficient stock for {line.name}")
        done.append(line)
    logger.info("Reserved stock for %d line(s)", len(done))


def release_stock(products, order: dict):
    for item in order.get("items", []):
        product = products.find_one({"_id": parse_object_id(item["product"], "Product")})
        if not product:
            continue
        try:
            restocked = increase(products, product, item_selection(item), item["quantity"], undo_sale=True)
        except InvalidConditionError:
            restocked = False
        if not restocked:
            logger.warning("Could not restock %s x%d for order %s", item.get("name"), item["quantity"], order["_id"])
    logger.info("Released stock of order %s", order["_id"])


def commit_stock(products, order: dict):
    """Decrease stock for an order whose payment has been captured; every model counts the sale."""
    for item in order.get("items", []):
        product = products.find_one({"_id": parse_object_id(item["product"], "Product")})
        if not product:
            logger.warning("Paid order %s references missing product %s", order["_id"], item["product"])
            continue
        try:
            taken = decrease(products, product, item_selection(item), item["quantity"], count_sale=True)
        except InvalidConditionError:
            taken = False
        if not taken:
            logger.warning("Paid order %s: could not take %d x %s out of stock, needs operator follow-up",
                           order["_id"], item["quantity"], item.get("name"))


def order_total(items: List[dict], shipping_price: float = 0, tax_price: float = 0) -> float:
    return round(sum(i["price"] * i["quantity"] for i in items) + shipping_price + tax_price, 2)


def create_order(db, user: dict, payload: OrderCreate) -> dict:
    """Place an order and reserve its stock immediately."""
    products = db["product"]
    lines = resolve_lines(products, payload.items)
    items = [order_item(line) for line in lines]

    doc = validate_document(Order, {
        "user": str(user["_id"]),
        "items": items,
        "shippingAddress": payload.shipping_address.model_dump(by_alias=True) if payload.shipping_address else None,
        "paymentMethod": payload.payment_method,
        "shippingPrice": payload.shipping_price,
        "taxPrice": payload.tax_price,
        "totalAmount": order_total(items, payload.shipping_price, payload.tax_price),
        "stockReserved": True,
    })

    reserve_stock(products, lines)
    try:
        order_id = create_document(db, "order", doc)
    except Exception:
        for line in lines:
            increase(products, line.product, line.selection, line.quantity, undo_sale=True)
        raise
    logger.info("Order %s created for user %s (%.2f)", order_id, doc["user"], doc["totalAmount"])
    return db["order"].find_one({"_id": parse_object_id(order_id)})


def ensure_can_access(order: dict, user: dict):
    if order.get("user") != str(user["_id"]) and user.get("role") != "admin":
        raise AuthorizationError("Not allowed to access this order")


def get_order(db, order_id, user: Optional[dict] = None) -> dict:
    order = db["order"].find_one({"_id": parse_object_id(order_id, "Order")})
    if not order:
        raise NotFoundError("Order not found")
    if user is not None:
        ensure_can_access(order, user)
    return order


def list_orders(db, status: Optional[str] = None, page: int = 1, limit: int = 20) -> Tuple[List[dict], int]:
    query = {"status": status} if status else {}
    skip = (page - 1) * limit
    orders = list(db["order"].find(query).sort("createdAt", -1).skip(skip).limit(limit))
    return orders, db["order"].count_documents(query)


def user_orders(db, user: dict) -> List[dict]:
    return list(db["order"].find({"user": str(user["_id"])}).sort("createdAt", -1))


def confirm_payment(db, order_id, source: str, shipping_address: Optional[dict] = None,
                    payment_result: Optional[dict] = None) -> Tuple[dict, bool]:
    """
    Move a pending order to paid exactly once.

    Returns the order and whether this call performed the transition. An order
    that is already paid is returned untouched. Stock is taken from the live
    catalog only if the order did not reserve it when it was placed.
    """
    orders = db["order"]
    oid = parse_object_id(order_id, "Order")
    paid_at = now()
    update = {"status": "paid", "paymentStatus": "paid", "isPaid": True, "paidAt": paid_at, "updatedAt": paid_at}
    if shipping_address:
        update["shippingAddress"] = shipping_address
    if payment_result:
        update["paymentResult"] = payment_result

    order = orders.find_one_and_update(
        {"_id": oid, "status": "pending", "paymentStatus": {"$ne": "paid"}},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = orders.find_one({"_id": oid})
        if existing is None:
            raise NotFoundError("Order not found")
        if existing.get("paymentStatus") == "paid" or existing.get("isPaid"):
            return existing, False
        raise ConflictError(f"Order cannot be paid from status {existing.get('status')}")

    logger.info("Order %s paid (%s)", oid, source)
    if not order.get("stockReserved"):
        commit_stock(db["product"], order)
        order = orders.find_one_and_update(
            {"_id": oid}, {"$set": {"stockReserved": True}}, return_document=ReturnDocument.AFTER
        )
    return order, True


def mark_paid(db, order_id, user: dict, payment_result: dict) -> dict:
    order = get_order(db, order_id, user)
    if order.get("isPaid"):
        raise ConflictError("This order is already paid")
    order, transitioned = confirm_payment(db, order["_id"], "manual", payment_result=payment_result)
    if not transitioned:
        raise ConflictError("This order is already paid")
    return order


def _transition_failed(db, oid, action: str):
    existing = db["order"].find_one({"_id": oid})
    if existing is None:
        raise NotFoundError("Order not found")
    raise ConflictError(f"Cannot {action} an order in status {existing.get('status')}")


def mark_shipped(db, order_id) -> dict:
    oid = parse_object_id(order_id, "Order")
    order = db["order"].find_one_and_update(
        {"_id": oid, "status": "paid"},
        {"$set": {"status": "shipped", "updatedAt": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        _transition_failed(db, oid, "ship")
    return order


def mark_delivered(db, order_id) -> dict:
    oid = parse_object_id(order_id, "Order")
    delivered_at = now()
    order = db["order"].find_one_and_update(
        {"_id": oid, "isPaid": True, "isDelivered": {"$ne": True}, "status": {"$in": ["paid", "shipped"]}},
        {"$set": {"isDelivered": True, "deliveredAt": delivered_at, "status": "delivered", "updatedAt": delivered_at}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = get_order(db, oid)
        if existing.get("isDelivered"):
            raise ConflictError("This order is already delivered")
        if not existing.get("isPaid"):
            raise ConflictError("The order must be paid before it can be delivered")
        _transition_failed(db, oid, "deliver")
    return order


def cancel_order(db, order_id, user: dict) -> dict:
    order = get_order(db, order_id, user)
    cancelled = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "pending", "isPaid": {"$ne": True}},
        {"$set": {"status": "cancelled", "updatedAt": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if cancelled is None:
        _transition_failed(db, order["_id"], "cancel")
    if cancelled.get("stockReserved"):
        release_stock(db["product"], cancelled)
    return cancelled


def delete_order(db, order_id, user: dict):
    order = get_order(db, order_id, user)
    if order.get("isPaid") or order.get("paymentStatus") == "paid":
        raise ConflictError("A paid order cannot be deleted. Please contact support.")
    result = db["order"].delete_one({"_id": order["_id"], "status": "pending", "isPaid": {"$ne": True}})
    if result.deleted_count != 1:
        _transition_failed(db, order["_id"], "delete")
    if order.get("stockReserved"):
        release_stock(db["product"], order)
