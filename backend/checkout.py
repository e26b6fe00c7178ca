"""
Cart arithmetic and the per-seller order split used at checkout.
"""
import time
from typing import Dict, List, Optional


def cart_total(items: List[dict]) -> float:
    return sum(item["price"] * item["qty"] for item in items)


def group_by_seller(items: List[dict]) -> Dict[str, dict]:
    """Split cart lines into one pending order body per seller.

    Lines without seller id or seller name are skipped; insertion order of
    sellers follows the cart.
    """
    groups: Dict[str, dict] = {}
    for item in items:
        seller_id = item.get("seller_id")
        if not seller_id or not item.get("seller_name"):
            continue
        group = groups.setdefault(seller_id, {
            "seller_id": seller_id,
            "seller_name": item["seller_name"],
            "items": [],
            "total_amount": 0.0,
        })
        group["items"].append({
            "product_id": item["product_id"],
            "name": item["name"],
            "price": item["price"],
            "quantity": item["qty"],
        })
        group["total_amount"] += item["price"] * item["qty"]
    return groups


def order_number(seller_id: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"ORD-{now_ms}-{seller_id[-4:]}"
