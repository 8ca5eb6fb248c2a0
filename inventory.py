"""
Stock mutation engine.

Every change is a single conditional update on the product document: the
filter pins the exact stock bucket (and, for variant colors, the stored color
name at that position) and, for decrements, requires ``stock >= quantity``.
Two concurrent orders for the last unit cannot both succeed.
"""
import logging
from typing import Optional

from catalog import load_catalog
from database import now
from errors import ValidationError
from schemas import Selection

logger = logging.getLogger(__name__)


def _check_quantity(quantity):
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        raise ValidationError("Quantity must be a positive integer")


def decrease(products, product: dict, selection: Optional[Selection], quantity: int,
             count_sale: Optional[bool] = None) -> bool:
    """
    Take ``quantity`` units out of the bucket the selection points at.

    Returns False when the bucket does not exist or holds fewer than
    ``quantity`` units; nothing is written in that case. Raises
    InvalidConditionError for a condition code foreign to the product's model.
    ``count_sale`` forces whether soldCount moves; by default the catalog
    model decides.
    """
    _check_quantity(quantity)
    selection = selection or Selection()
    target = load_catalog(product).stock_target(selection)
    if target is None:
        logger.warning("No stock bucket for product %s selection %s", product.get("_id"), selection.model_dump())
        return False

    inc = {target.stock_field: -quantity}
    if target.counts_sale if count_sale is None else count_sale:
        inc["soldCount"] = quantity
    result = products.update_one(
        {"_id": product["_id"], **target.guards, target.stock_field: {"$gte": quantity}},
        {"$inc": inc, "$set": {"updatedAt": now()}},
    )
    if result.modified_count != 1:
        logger.warning("Insufficient stock on %s for product %s (requested %d)",
                       target.stock_field, product.get("_id"), quantity)
        return False
    return True


def increase(products, product: dict, selection: Optional[Selection], quantity: int, undo_sale: bool = False) -> bool:
    """
    Put ``quantity`` units back into the bucket the selection points at.

    With ``undo_sale`` the units are also taken off ``soldCount``, which is how
    a compensating rollback mirrors a previous decrease.
    """
    _check_quantity(quantity)
    selection = selection or Selection()
    target = load_catalog(product).stock_target(selection)
    if target is None:
        return False

    inc = {target.stock_field: quantity}
    if undo_sale and target.counts_sale:
        inc["soldCount"] = -quantity
    result = products.update_one(
        {"_id": product["_id"], **target.guards},
        {"$inc": inc, "$set": {"updatedAt": now()}},
    )
    return result.modified_count == 1
