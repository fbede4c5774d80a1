from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

from marketplace.services.pricing import decorate_product, discount_for, slugify, time_left

NOW = datetime(2024, 6, 1, 12, 0, 0)


def make_deal(**overrides):
    deal = dict(
        id=3, title="Summer Sale", deal_type="flash", discount_type="percentage",
        discount_value=Decimal("25"), max_discount_amount=None, end_date=NOW + timedelta(days=2, hours=5),
        banner_text="25% off", usage_limit=None, usage_count=0,
    )
    deal.update(overrides)
    return SimpleNamespace(**deal)


def test_slugify():
    assert slugify("Office Supplies") == "office-supplies"
    assert slugify("  Pens & Paper!  ") == "pens-paper"
    assert slugify("Tech--Gear") == "tech-gear"


def test_percentage_discount_respects_cap():
    assert discount_for(200, "percentage", 25) == Decimal("50.00")
    assert discount_for(200, "percentage", 25, max_discount=30) == Decimal("30.00")


def test_fixed_discount_leaves_a_cent():
    assert discount_for(10, "fixed_amount", 4) == Decimal("4.00")
    assert discount_for(10, "fixed_amount", 50) == Decimal("9.99")
    assert discount_for(10, "bogus", 5) == Decimal("0.00")


def test_time_left_formats():
    assert time_left(NOW + timedelta(days=1, hours=3), NOW) == "1d 3h"
    assert time_left(NOW + timedelta(hours=2, minutes=15), NOW) == "2h 15m"
    assert time_left(NOW + timedelta(minutes=9), NOW) == "9m"
    assert time_left(NOW - timedelta(seconds=1), NOW) == "Expired"


def test_decorate_product_percentage_deal():
    product = {"id": 1, "name": "Chair", "price": 80.0, "stock_quantity": 5}

    decorated = decorate_product(product, make_deal(), NOW)

    assert decorated["original_price"] == 80.0
    assert decorated["discounted_price"] == 60.0
    assert decorated["savings"] == 20.0
    assert decorated["discount_percentage"] == 25.0
    assert decorated["time_left"] == "2d 5h"
    assert decorated["is_limited_stock"] is True
    assert decorated["deal_id"] == 3


def test_decorate_product_fixed_deal():
    product = {"id": 2, "name": "Desk", "price": 50.0, "stock_quantity": 100}
    deal = make_deal(discount_type="fixed_amount", discount_value=Decimal("10"))

    decorated = decorate_product(product, deal, NOW)

    assert decorated["discounted_price"] == 40.0
    assert decorated["discount_percentage"] == 20
    assert decorated["is_limited_stock"] is False
