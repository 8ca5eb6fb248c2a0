"""
Best-sellers: four featured slots on the home page.

Admins pin products to slots 1-4; slots left free are filled with the top
sellers by soldCount.
"""
import logging
from typing import List, Tuple

from pymongo import ReturnDocument

from database import now, parse_object_id
from errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SLOTS = [1, 2, 3, 4]
MAX_BEST_SELLERS = len(SLOTS)


def _find(products, product_id) -> dict:
    product = products.find_one({"_id": parse_object_id(product_id, "Product")})
    if not product:
        raise NotFoundError("Product not found")
    return product


def get_best_sellers(products) -> Tuple[List[dict], str]:
    """
    Return the featured products in slot order and the selection mode.

    A pinned product sits at its own slot; the remaining slots take the best
    selling products that are not pinned, highest soldCount first.
    """
    pinned = list(
        products.find({"isBestSeller": True, "bestSellerOrder": {"$ne": None}})
        .sort("bestSellerOrder", 1)
        .limit(MAX_BEST_SELLERS)
    )
    needed = MAX_BEST_SELLERS - len(pinned)
    fillers = []
    if needed > 0:
        fillers = list(
            products.find({"_id": {"$nin": [p["_id"] for p in pinned]}})
            .sort("soldCount", -1)
            .limit(needed)
        )

    by_slot = {p["bestSellerOrder"]: p for p in pinned}
    result = []
    for slot in SLOTS:
        if slot in by_slot:
            result.append(by_slot[slot])
        elif fillers:
            result.append(fillers.pop(0))
    mode = "hybrid" if pinned else "automatic"
    return result, mode


def add_best_seller(products, product_id) -> dict:
    product = _find(products, product_id)
    if product.get("isBestSeller"):
        return product

    if products.count_documents({"isBestSeller": True}) >= MAX_BEST_SELLERS:
        raise ConflictError(f"Limit of {MAX_BEST_SELLERS} best sellers reached")
    used = {p.get("bestSellerOrder") for p in products.find({"isBestSeller": True}, {"bestSellerOrder": 1})}
    slot = next(s for s in SLOTS if s not in used)

    updated = products.find_one_and_update(
        {"_id": product["_id"], "isBestSeller": {"$ne": True}},
        {"$set": {"isBestSeller": True, "bestSellerOrder": slot, "updatedAt": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        return _find(products, product["_id"])
    logger.info("Product %s pinned as best seller in slot %d", product["_id"], slot)
    return updated


def update_best_seller_order(products, product_id, order: int) -> dict:
    """Move a pinned product to another slot, swapping with its current holder."""
    if order not in SLOTS:
        raise ValidationError("The order must be between 1 and 4")
    product = _find(products, product_id)
    if not product.get("isBestSeller"):
        raise ConflictError("This product is not a best seller")

    current = product.get("bestSellerOrder")
    if current == order:
        return product
    if current is None:
        # Pinned without a slot: the displaced holder takes the lowest free slot instead
        used = {p.get("bestSellerOrder") for p in products.find(
            {"isBestSeller": True, "_id": {"$ne": product["_id"]}}, {"bestSellerOrder": 1})}
        current = next((s for s in SLOTS if s not in used), None)
        if current is None:
            raise ConflictError("No free best-seller slot for the displaced product")
    holder = products.find_one_and_update(
        {"_id": {"$ne": product["_id"]}, "isBestSeller": True, "bestSellerOrder": order},
        {"$set": {"bestSellerOrder": current, "updatedAt": now()}},
    )
    if holder is not None:
        logger.info("Best seller %s moved from slot %d to slot %s", holder["_id"], order, current)

    updated = products.find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {"bestSellerOrder": order, "updatedAt": now()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Best seller %s moved to slot %d", product["_id"], order)
    return updated


def remove_best_seller(products, product_id) -> dict:
    product = _find(products, product_id)
    updated = products.find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {"isBestSeller": False, "bestSellerOrder": None, "updatedAt": now()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Product %s removed from best sellers (slot %s freed)", product["_id"], product.get("bestSellerOrder"))
    return updated
