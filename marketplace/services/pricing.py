# marketplace/services/pricing.py
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from .. import crud

MIN_PRICE = Decimal("0.01")
LIMITED_STOCK_THRESHOLD = 20


def slugify(name: str) -> str:
    return re.sub(r"[\s\W-]+", "-", (name or "").lower().strip()).strip("-")


def discount_for(price, discount_type: str, discount_value, max_discount=None) -> Decimal:
    """Savings for one unit. Percentage deals respect the cap, fixed ones leave at least a cent."""
    price = crud.money(price)
    value = Decimal(str(discount_value or 0))
    if discount_type == "percentage":
        amount = price * value / 100
        if max_discount is not None:
            amount = min(amount, Decimal(str(max_discount)))
    elif discount_type == "fixed_amount":
        amount = min(value, price - MIN_PRICE)
    else:
        amount = Decimal("0")
    return crud.money(max(amount, Decimal("0")))


def time_left(end_date: datetime, now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    seconds = int((end_date - now).total_seconds())
    if seconds <= 0:
        return "Expired"
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def decorate_product(product: Dict[str, Any], deal, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Attach the deal's pricing to a serialized product row."""
    price = crud.money(product["price"])
    savings = discount_for(price, deal.discount_type, deal.discount_value, deal.max_discount_amount)
    discounted = max(price - savings, MIN_PRICE)
    if deal.discount_type == "percentage":
        pct = float(deal.discount_value)
    else:
        pct = round(float(savings / price * 100)) if price > 0 else 0
    return {
        **product,
        "deal_id": deal.id,
        "deal_title": deal.title,
        "deal_type": deal.deal_type,
        "original_price": float(price),
        "discounted_price": float(discounted),
        "savings": float(savings),
        "discount_percentage": pct,
        "time_left": time_left(deal.end_date, now),
        "banner_text": deal.banner_text,
        "usage_limit": deal.usage_limit,
        "usage_count": deal.usage_count,
        "is_limited_stock": (product.get("stock_quantity") or 0) <= LIMITED_STOCK_THRESHOLD,
    }
