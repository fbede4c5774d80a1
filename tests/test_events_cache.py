import pytest

from marketplace.cache import TTLCache, CACHE_KEYS, category_products_key, product_detail_key
from marketplace.events import EVENTS, EventBus, emit_category_update, emit_product_change


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_failing_callback_does_not_stop_dispatch():
    bus = EventBus()
    seen = []

    def broken(payload):
        raise RuntimeError("boom")

    bus.on("ping", broken)
    bus.on("ping", seen.append)
    bus.emit("ping", 1)

    assert seen == [1]


def test_unsubscribe_and_off():
    bus = EventBus()
    seen = []
    unsubscribe = bus.on("ping", seen.append)
    bus.on("ping", lambda _: None)
    assert bus.listener_count("ping") == 2

    unsubscribe()
    bus.emit("ping", "x")
    assert seen == []
    assert bus.listener_count("ping") == 1

    bus.off("ping")
    assert bus.listener_count("ping") == 0
    bus.emit("nobody-listens")


def test_callback_can_unsubscribe_itself_during_emit():
    bus = EventBus()
    calls = []
    holder = {}

    def once(payload):
        calls.append(payload)
        holder["unsub"]()

    holder["unsub"] = bus.on("ping", once)
    bus.emit("ping", 1)
    bus.emit("ping", 2)
    assert calls == [1]


def test_product_change_also_announces_inventory_change():
    bus = EventBus()
    added, inventory = [], []
    bus.on(EVENTS["PRODUCT_ADDED"], added.append)
    bus.on(EVENTS["INVENTORY_CHANGED"], inventory.append)

    emit_product_change(bus, "added", {"id": 1})

    assert added == [{"id": 1}]
    assert inventory == [{"type": "added", "product": {"id": 1}}]

    with pytest.raises(ValueError):
        emit_product_change(bus, "renamed", {"id": 1})


def test_entries_expire():
    clock = FakeClock()
    cache = TTLCache(default_ttl=10, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, ttl=100)

    assert cache.get("a") == 1
    clock.now += 10
    assert cache.get("a") is None
    assert cache.get("a", "fallback") == "fallback"
    assert cache.has("b")
    assert cache.stats() == {"valid": 1, "expired": 0, "total": 1}


def test_stats_count_expired_entries_until_read():
    clock = FakeClock()
    cache = TTLCache(default_ttl=5, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, ttl=50)
    clock.now += 6

    assert cache.stats() == {"valid": 1, "expired": 1, "total": 2}


def test_invalidate_pattern_and_prefix_clear():
    cache = TTLCache()
    cache.set(product_detail_key(1), "p1")
    cache.set(product_detail_key(2), "p2")
    cache.set(category_products_key("technology"), [])
    cache.set(CACHE_KEYS["CATEGORIES"], [])

    assert cache.invalidate_pattern("product_") == 2
    cache.clear("category_products_")
    assert not cache.has(category_products_key("technology"))
    assert cache.has(CACHE_KEYS["CATEGORIES"])
    assert cache.delete(CACHE_KEYS["CATEGORIES"]) is True
    assert cache.delete(CACHE_KEYS["CATEGORIES"]) is False


def test_attached_cache_follows_catalogue_events():
    bus = EventBus()
    cache = TTLCache()
    cache.attach(bus)
    cache.set(CACHE_KEYS["CATEGORIES"], ["x"])
    cache.set(category_products_key("technology"), ["y"])
    cache.set(CACHE_KEYS["ALL_DEALS"], ["z"])

    emit_category_update(bus, {"id": 1})
    assert not cache.has(CACHE_KEYS["CATEGORIES"])
    assert not cache.has(category_products_key("technology"))
    assert cache.has(CACHE_KEYS["ALL_DEALS"])

    emit_product_change(bus, "updated", {"id": 1})
    assert cache.stats()["total"] == 0


def test_detached_cache_ignores_events():
    bus = EventBus()
    cache = TTLCache()
    for unsubscribe in cache.attach(bus):
        unsubscribe()
    cache.set("k", "v")
    bus.emit(EVENTS["INVENTORY_CHANGED"], {"type": "deleted"})
    assert cache.get("k") == "v"
