"""
Fixed enumerations shared by the catalog, the orders and the storefront UI.

The codes are persisted as-is in product and order documents and must not be
renamed.
"""
from typing import Optional

# Storage capacities in GB, smallest first
STORAGES = ["64", "128", "256", "512", "1024"]

# Conditions of the variant model, best first
VARIANT_CONDITIONS = ["neuf_sous_blister", "neuf_sans_boite", "etat_parfait", "tres_bon_etat"]

# Conditions of the legacy flat-condition model
LEGACY_CONDITIONS = ["new_sealed", "new_open", "perfect", "good"]

STORAGE_LABELS = {
    "64": "64 Go",
    "128": "128 Go",
    "256": "256 Go",
    "512": "512 Go",
    "1024": "1 To",
}

CONDITION_LABELS = {
    "neuf_sous_blister": "Neuf sous blister",
    "neuf_sans_boite": "Neuf sans boîte",
    "etat_parfait": "État parfait",
    "tres_bon_etat": "Très bon état",
    "new_sealed": "Neuf sous blister",
    "new_open": "Neuf sans boîte",
    "perfect": "Reconditionné - État parfait",
    "good": "Reconditionné - État correct",
}


def is_valid_storage(storage: Optional[str]) -> bool:
    return storage in STORAGES


def is_valid_condition(condition: Optional[str]) -> bool:
    return condition in VARIANT_CONDITIONS or condition in LEGACY_CONDITIONS


def storage_label(storage: str) -> str:
    return STORAGE_LABELS.get(storage, f"{storage} Go")


def condition_label(condition: str) -> str:
    return CONDITION_LABELS.get(condition, condition)


def color_key(name: Optional[str]) -> str:
    """Normalized lookup key for a free-text color name."""
    return (name or "").strip().lower()
