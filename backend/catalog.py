"""
Product catalog helpers: search filtering and seller-name enrichment.
"""
import re
from typing import Iterable, List, Optional

from pydantic import BaseModel

import database
from config import UNKNOWN_SELLER

_NON_NUMERIC = re.compile(r"[^\d.]")


class ProductFilter(BaseModel):
    q: Optional[str] = None
    quantity_min: Optional[float] = None
    weight_min: Optional[float] = None
    material_type: Optional[str] = None


def parse_number(value) -> Optional[float]:
    """Pull the numeric part out of free text such as "5kg"; None when it does not parse."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    digits = _NON_NUMERIC.sub("", str(value))
    if not digits:
        # text with no digits at all reads as zero, e.g. "heavy"
        return 0.0
    try:
        return float(digits)
    except ValueError:
        return None


def _at_least(value, minimum: Optional[float]) -> bool:
    # Products missing the field, or whose digits do not form a number, are never filtered out
    if minimum is None or not value:
        return True
    number = parse_number(value)
    if number is None:
        return True
    return number >= minimum


def matches(product: dict, criteria: ProductFilter) -> bool:
    if criteria.q and criteria.q.lower() not in (product.get("name") or "").lower():
        return False
    if not _at_least(product.get("quantity"), criteria.quantity_min):
        return False
    if not _at_least(product.get("weight"), criteria.weight_min):
        return False
    if criteria.material_type:
        material = product.get("material_type") or ""
        if criteria.material_type.lower() not in material.lower():
            return False
    return True


def filter_products(products: Iterable[dict], criteria: ProductFilter) -> List[dict]:
    return [p for p in products if matches(p, criteria)]


def seller_names(seller_ids: Iterable[str]) -> dict:
    """Map seller ids to registry usernames in one query."""
    oids = [oid for oid in (database.to_object_id(s) for s in set(seller_ids)) if oid]
    if not oids:
        return {}
    sellers = database.collection("seller").find({"_id": {"$in": oids}})
    return {str(s["_id"]): s.get("username") or UNKNOWN_SELLER for s in sellers}


def with_seller_names(products: List[dict]) -> List[dict]:
    names = seller_names(p.get("seller_id") for p in products if p.get("seller_id"))
    return [
        {**database.serialize(p), "seller_name": names.get(p.get("seller_id"), UNKNOWN_SELLER)}
        for p in products
    ]
