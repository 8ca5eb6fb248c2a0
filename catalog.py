"""
Catalog model of a product: which of the three pricing shapes is authoritative,
and how a requested selection resolves to a unit price and available stock.

A product carries one of three shapes, checked in this order:

* ``variants``    variants[storage][condition] = {price, publicPrice, colors: [{name, stock}]}
* ``conditions``  legacy conditions[condition] = {price, stock, colors: [name]}
* flat            price / stock / colors on the product itself

``load_catalog`` picks the shape once; everything else asks the returned
catalog object and never looks at the other shapes.
"""
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter

import config
from codes import (
    LEGACY_CONDITIONS,
    STORAGES,
    VARIANT_CONDITIONS,
    color_key,
    condition_label,
    is_valid_condition,
    is_valid_storage,
    storage_label,
)
from errors import (
    ColorUnavailableError,
    ConditionNotFoundError,
    InvalidConditionError,
    ValidationError,
    VariantNotFoundError,
)
from schemas import Product, Selection, validate_document

logger = logging.getLogger(__name__)


class Resolution(BaseModel):
    unit_price: Optional[float]
    available_stock: int
    # False when the selection is only precise enough for display
    purchasable: bool
    # Stored spelling of the matched color, if any
    color: Optional[str] = None


class StockTarget(BaseModel):
    """Where a stock change lands in the product document."""
    stock_field: str
    guards: Dict[str, Any] = Field(default_factory=dict)
    counts_sale: bool = True


# -----------------------------
# Value checks
# -----------------------------

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_stock(value) -> bool:
    return _is_number(value) and value >= 0 and float(value).is_integer()


def _stock(value) -> int:
    return int(value) if _is_stock(value) else 0


def _color_name(color) -> str:
    if isinstance(color, dict):
        return str(color.get("name") or "").strip()
    return ""


def is_configured_leaf(leaf) -> bool:
    """A leaf is sellable once it has a positive price and one valid color."""
    if not isinstance(leaf, dict):
        return False
    price = leaf.get("price")
    if not _is_number(price) or price <= 0:
        return False
    return any(_color_name(c) and _is_stock(c.get("stock")) for c in leaf.get("colors") or [])


def color_index(leaf: dict) -> Dict[str, Tuple[int, dict]]:
    """Colors of a leaf by normalized name, keeping their array position."""
    index = {}
    for position, color in enumerate(leaf.get("colors") or []):
        key = color_key(_color_name(color))
        if key and key not in index:
            index[key] = (position, color)
    return index


def check_selection_codes(selection: Selection):
    if selection.storage is not None and not is_valid_storage(selection.storage):
        raise ValidationError(f"Invalid storage capacity: {selection.storage}")
    if selection.condition is not None and not is_valid_condition(selection.condition):
        raise ValidationError(f"Invalid condition: {selection.condition}")


# -----------------------------
# Catalog models
# -----------------------------

class VariantsCatalog(BaseModel):
    kind: Literal["variants"] = "variants"
    # Only configured leaves are kept; colors stay as stored so positions match the document
    variants: Dict[str, Dict[str, Dict[str, Any]]]

    def leaf(self, storage: Optional[str], condition: Optional[str]) -> Optional[dict]:
        return self.variants.get(storage or "", {}).get(condition or "")

    def leaves(self) -> List[dict]:
        return [leaf for by_condition in self.variants.values() for leaf in by_condition.values()]

    def leaf_stock(self, leaf: dict) -> int:
        return sum(_stock(c.get("stock")) for c in leaf.get("colors") or [] if isinstance(c, dict))

    def resolve(self, selection: Selection) -> Resolution:
        if not (selection.storage and selection.condition):
            return Resolution(unit_price=self.lowest_price(), available_stock=self.total_stock(), purchasable=False)

        leaf = self.leaf(selection.storage, selection.condition)
        if leaf is None:
            raise VariantNotFoundError(
                f"Variant not available: {storage_label(selection.storage)} - {condition_label(selection.condition)}"
            )
        price = float(leaf["price"])
        if not selection.color:
            return Resolution(unit_price=price, available_stock=self.leaf_stock(leaf), purchasable=False)

        match = color_index(leaf).get(color_key(selection.color))
        if match is None:
            raise ColorUnavailableError(
                f'Color "{selection.color}" not available for '
                f"{storage_label(selection.storage)} - {condition_label(selection.condition)}"
            )
        _, color = match
        return Resolution(
            unit_price=price,
            available_stock=_stock(color.get("stock")),
            purchasable=True,
            color=_color_name(color),
        )

    def stock_target(self, selection: Selection) -> Optional[StockTarget]:
        if selection.condition not in VARIANT_CONDITIONS:
            raise InvalidConditionError(f"Invalid condition: {selection.condition}")
        leaf = self.leaf(selection.storage, selection.condition)
        if leaf is None:
            return None
        match = color_index(leaf).get(color_key(selection.color))
        if match is None:
            return None
        position, color = match
        path = f"variants.{selection.storage}.{selection.condition}.colors.{position}"
        return StockTarget(stock_field=f"{path}.stock", guards={f"{path}.name": color.get("name")})

    def lowest_price(self) -> Optional[float]:
        stocked = [leaf["price"] for leaf in self.leaves() if self.leaf_stock(leaf) > 0]
        prices = stocked or [leaf["price"] for leaf in self.leaves()]
        return float(min(prices)) if prices else None

    def total_stock(self) -> int:
        return sum(self.leaf_stock(leaf) for leaf in self.leaves())

    def in_stock(self) -> bool:
        return any(self.leaf_stock(leaf) > 0 for leaf in self.leaves())


class ConditionsCatalog(BaseModel):
    kind: Literal["conditions"] = "conditions"
    conditions: Dict[str, Dict[str, Any]]

    def resolve(self, selection: Selection) -> Resolution:
        if not selection.condition:
            return Resolution(unit_price=self.lowest_price(), available_stock=self.total_stock(), purchasable=False)

        entry = self.conditions.get(selection.condition)
        if entry is None:
            raise ConditionNotFoundError(f"Condition not available: {condition_label(selection.condition)}")
        color = None
        if selection.color:
            names = {color_key(name): str(name).strip() for name in entry.get("colors") or []}
            color = names.get(color_key(selection.color))
            if color is None:
                raise ColorUnavailableError(
                    f'Color "{selection.color}" not available for condition {condition_label(selection.condition)}'
                )
        return Resolution(
            unit_price=float(entry.get("price") or 0),
            available_stock=_stock(entry.get("stock")),
            purchasable=True,
            color=color,
        )

    def stock_target(self, selection: Selection) -> Optional[StockTarget]:
        if selection.condition not in LEGACY_CONDITIONS:
            raise InvalidConditionError(f"Invalid condition: {selection.condition}")
        if selection.condition not in self.conditions:
            return None
        return StockTarget(stock_field=f"conditions.{selection.condition}.stock")

    def lowest_price(self) -> Optional[float]:
        priced = [e for e in self.conditions.values() if _is_number(e.get("price")) and e["price"] > 0]
        stocked = [e["price"] for e in priced if _stock(e.get("stock")) > 0]
        prices = stocked or [e["price"] for e in priced]
        return float(min(prices)) if prices else None

    def total_stock(self) -> int:
        return sum(_stock(e.get("stock")) for e in self.conditions.values())

    def in_stock(self) -> bool:
        return any(_stock(e.get("stock")) > 0 for e in self.conditions.values())


class FlatCatalog(BaseModel):
    kind: Literal["flat"] = "flat"
    price: float = 0
    stock: int = 0
    colors: List[str] = Field(default_factory=list)

    def resolve(self, selection: Selection) -> Resolution:
        # Color is informational on flat products
        return Resolution(unit_price=self.price, available_stock=self.stock, purchasable=True, color=selection.color)

    def stock_target(self, selection: Selection) -> Optional[StockTarget]:
        return StockTarget(stock_field="stock", counts_sale=config.FLAT_STOCK_COUNTS_SALES)

    def lowest_price(self) -> Optional[float]:
        return self.price

    def total_stock(self) -> int:
        return self.stock

    def in_stock(self) -> bool:
        return self.stock > 0


CatalogModel = Annotated[Union[VariantsCatalog, ConditionsCatalog, FlatCatalog], Field(discriminator="kind")]
_catalog_adapter = TypeAdapter(CatalogModel)


def load_catalog(product: dict) -> CatalogModel:
    """Select the authoritative pricing shape of a product document."""
    variants = {}
    for storage, by_condition in (product.get("variants") or {}).items():
        if not isinstance(by_condition, dict):
            continue
        leaves = {c: leaf for c, leaf in by_condition.items() if is_configured_leaf(leaf)}
        if leaves:
            variants[str(storage)] = leaves
    if variants:
        return _catalog_adapter.validate_python({"kind": "variants", "variants": variants})

    conditions = {k: v for k, v in (product.get("conditions") or {}).items() if isinstance(v, dict)}
    if conditions:
        return _catalog_adapter.validate_python({"kind": "conditions", "conditions": conditions})

    return _catalog_adapter.validate_python({
        "kind": "flat",
        "price": product.get("price") or 0,
        "stock": _stock(product.get("stock")),
        "colors": [str(c) for c in product.get("colors") or []],
    })


def resolve(product: dict, selection: Optional[Selection] = None) -> Resolution:
    """Effective unit price and available stock of a product for a selection."""
    return load_catalog(product).resolve(selection or Selection())


def describe(product: dict) -> dict:
    """Product document with the derived listing fields."""
    catalog = load_catalog(product)
    d = dict(product)
    d["catalogModel"] = catalog.kind
    d["displayPrice"] = catalog.lowest_price()
    d["totalStock"] = catalog.total_stock()
    d["inStock"] = catalog.in_stock()
    return d


# -----------------------------
# Write-time cleaning
# -----------------------------

def prune_leaf(raw) -> Optional[dict]:
    if not is_configured_leaf(raw):
        return None
    colors = []
    seen = set()
    for color in raw.get("colors") or []:
        name = _color_name(color)
        if not name or not _is_stock(color.get("stock")) or color_key(name) in seen:
            continue
        seen.add(color_key(name))
        colors.append({"name": name, "stock": int(color["stock"])})
    leaf = {"price": float(raw["price"]), "colors": colors}
    public_price = raw.get("publicPrice")
    if _is_number(public_price) and public_price >= 0:
        leaf["publicPrice"] = float(public_price)
    return leaf


def prune_variants(raw, strict: bool = True) -> Tuple[dict, int]:
    """
    Drop unconfigured leaves and storages left without any leaf.

    Returns the cleaned mapping and the number of leaves removed. Unknown
    storage or condition codes are rejected in strict mode and dropped otherwise.
    """
    if raw is None:
        return {}, 0
    if not isinstance(raw, dict):
        raise ValidationError("variants must be an object keyed by storage capacity")

    cleaned = {}
    removed = 0
    for storage, by_condition in raw.items():
        storage = str(storage)
        if storage not in STORAGES:
            if strict:
                raise ValidationError(f"Invalid storage capacity: {storage}. Valid values are: {', '.join(STORAGES)}")
            removed += len(by_condition) if isinstance(by_condition, dict) else 1
            continue
        if not isinstance(by_condition, dict):
            removed += 1
            continue
        leaves = {}
        for condition, leaf in by_condition.items():
            if condition not in VARIANT_CONDITIONS:
                if strict:
                    raise ValidationError(f"Invalid condition: {condition}")
                removed += 1
                continue
            pruned = prune_leaf(leaf)
            if pruned is None:
                removed += 1
                continue
            leaves[condition] = pruned
        if leaves:
            cleaned[storage] = {c: leaves[c] for c in VARIANT_CONDITIONS if c in leaves}

    return {s: cleaned[s] for s in STORAGES if s in cleaned}, removed


def prune_conditions(raw) -> dict:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("conditions must be an object keyed by condition")
    cleaned = {}
    for condition, entry in raw.items():
        if condition not in LEGACY_CONDITIONS:
            raise ValidationError(f"Invalid condition: {condition}")
        if not isinstance(entry, dict):
            continue
        colors = []
        seen = set()
        for name in entry.get("colors") or []:
            name = str(name).strip()
            if name and color_key(name) not in seen:
                seen.add(color_key(name))
                colors.append(name)
        cleaned[condition] = {
            "price": float(entry.get("price") or 0),
            "stock": _stock(entry.get("stock")),
            "colors": colors,
        }
    return cleaned


def available_storages(variants: dict) -> List[str]:
    return [s for s in STORAGES if s in variants]


def prepare_product(updates: dict, existing: Optional[dict] = None) -> dict:
    """
    Merge a create/update payload into a product document ready to persist.

    Writing non-empty variants moves the product off the legacy condition
    model. availableStorages is always recomputed from the cleaned variants.
    """
    updates = dict(updates)
    if updates.get("variants") and updates.get("conditions"):
        raise ValidationError("A product cannot have both variants and legacy conditions")

    if "variants" in updates:
        updates["variants"], removed = prune_variants(updates["variants"])
        if removed:
            logger.info("Dropped %d unconfigured variant(s) on write", removed)
        if updates["variants"]:
            updates["conditions"] = {}
    if "conditions" in updates:
        updates["conditions"] = prune_conditions(updates["conditions"])

    doc = {k: v for k, v in (existing or {}).items() if k != "_id"}
    doc.update(updates)
    if "variants" not in updates:
        doc["variants"], _ = prune_variants(doc.get("variants"), strict=False)
    doc["availableStorages"] = available_storages(doc["variants"])

    if doc["variants"] and doc.get("conditions"):
        raise ValidationError("Legacy conditions cannot be set on a product with variants")
    return validate_document(Product, doc)


def clean_stored_variants(products) -> Tuple[int, int]:
    """
    Prune unconfigured leaves from every stored product.

    Returns the number of products rewritten and of leaves removed.
    """
    modified = 0
    removed_total = 0
    for product in products.find({"variants": {"$exists": True, "$ne": {}}}):
        cleaned, removed = prune_variants(product.get("variants"), strict=False)
        storages = available_storages(cleaned)
        if not removed and storages == product.get("availableStorages"):
            continue
        products.update_one(
            {"_id": product["_id"]},
            {"$set": {"variants": cleaned, "availableStorages": storages}},
        )
        modified += 1
        removed_total += removed
        logger.info("Cleaned product %s: %d variant(s) removed", product["_id"], removed)
    return modified, removed_total
