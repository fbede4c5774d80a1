# marketplace/events.py
import logging
from typing import Any, Callable, Dict, List

log = logging.getLogger(__name__)

EVENTS = {
    "PRODUCT_ADDED": "product:added",
    "PRODUCT_UPDATED": "product:updated",
    "PRODUCT_DELETED": "product:deleted",
    "CATEGORY_UPDATED": "category:updated",
    "INVENTORY_CHANGED": "inventory:changed",
}


class EventBus:
    """Synchronous in-process pub/sub. One instance per app, kept on app.state."""

    def __init__(self):
        self._events: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        self._events.setdefault(event, []).append(callback)

        def unsubscribe():
            callbacks = self._events.get(event)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: str, *args, **kwargs) -> None:
        # iterate a copy: callbacks may unsubscribe themselves
        for callback in list(self._events.get(event, [])):
            try:
                callback(*args, **kwargs)
            except Exception:
                log.exception(f"[EVENTS] callback for {event} failed")

    def off(self, event: str) -> None:
        self._events.pop(event, None)

    def listener_count(self, event: str) -> int:
        return len(self._events.get(event, []))


def emit_product_change(bus: EventBus, change_type: str, product: Any) -> None:
    """change_type is one of added | updated | deleted."""
    key = f"PRODUCT_{change_type.upper()}"
    if key not in EVENTS:
        raise ValueError(f"unknown product change type: {change_type}")
    bus.emit(EVENTS[key], product)
    bus.emit(EVENTS["INVENTORY_CHANGED"], {"type": change_type, "product": product})


def emit_category_update(bus: EventBus, category: Any) -> None:
    bus.emit(EVENTS["CATEGORY_UPDATED"], category)
