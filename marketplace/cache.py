# marketplace/cache.py
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from .events import EventBus, EVENTS

log = logging.getLogger(__name__)

CACHE_KEYS = {
    "CATEGORIES": "categories",
    "CATEGORY_SLUGS": "category_slugs",
    "PRODUCTS": "products",
    "PRODUCTS_FEATURED": "products_featured",
    "FEATURED_DEALS": "featured_deals",
    "ALL_DEALS": "all_deals",
}


def product_detail_key(product_id) -> str:
    return f"product_{product_id}"


def category_products_key(slug: str) -> str:
    return f"category_products_{slug}"


class TTLCache:
    """
    key -> (value, expires_at). Entries only leave on expiry or explicit
    invalidation; there is no size bound.
    """

    def __init__(self, default_ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._store: Dict[str, Tuple[Any, float]] = {}

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        self._store[key] = (value, self._clock() + ttl)

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return default
        return value

    def has(self, key: str) -> bool:
        entry = self._store.get(key)
        return entry is not None and self._clock() < entry[1]

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def clear(self, prefix: Optional[str] = None) -> None:
        if prefix is None:
            self._store.clear()
            return
        for key in [k for k in self._store if k.startswith(prefix)]:
            del self._store[key]

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key containing ``pattern``; returns how many went."""
        doomed = [k for k in self._store if pattern in k]
        for key in doomed:
            del self._store[key]
        return len(doomed)

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        expired = sum(1 for _, expires_at in self._store.values() if now >= expires_at)
        return {"valid": len(self._store) - expired, "expired": expired, "total": len(self._store)}

    def attach(self, bus: EventBus):
        """Invalidate on catalogue changes. Returns the unsubscribe callables."""

        def on_inventory(event=None):
            self.clear()
            change = event.get("type") if isinstance(event, dict) else None
            log.debug(f"[CACHE] cleared on inventory change ({change})")

        def on_category(category=None):
            self.clear(CACHE_KEYS["CATEGORIES"])
            self.clear(CACHE_KEYS["CATEGORY_SLUGS"])
            self.clear("category_products_")
            log.debug("[CACHE] category entries cleared")

        return [
            bus.on(EVENTS["INVENTORY_CHANGED"], on_inventory),
            bus.on(EVENTS["CATEGORY_UPDATED"], on_category),
        ]
