# marketplace/services/checkout.py
import logging
import random
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import crud
from ..errors import (
    NotFound, InsufficientCredit, NoValidItems, OrderCreateFailed, ItemInsertFailed,
    CreditUpdateFailed, ValidationFailed,
)

log = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 5


def generate_order_number() -> str:
    suffix = str(int(time.time() * 1000))[-6:]
    return f"ORD-{suffix}-{random.randint(0, 999)}"


def format_address(address: Optional[Dict[str, Any]]) -> Optional[str]:
    """{"street", "city", "state", "zipCode"} -> "street, city, state zip"."""
    if not address:
        return None
    zip_code = address.get("zipCode") or address.get("zip") or ""
    return f"{address.get('street') or ''}, {address.get('city') or ''}, {address.get('state') or ''} {zip_code}".strip()


def parse_product_id(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        pid = value
    elif isinstance(value, str) and value.strip().isdigit():
        pid = int(value.strip())
    else:
        return None
    return pid if pid > 0 else None


def build_order_lines(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep cart lines with a positive integer product id and a usable price and quantity."""
    lines = []
    for item in items or []:
        pid = parse_product_id(item.get("id"))
        if pid is None:
            log.warning(f"[CHECKOUT] invalid product id {item.get('id')!r}, skipping line")
            continue
        try:
            qty = int(item.get("quantity") or 0)
            unit_price = crud.money(item.get("price"))
        except (TypeError, ValueError, InvalidOperation):
            log.warning(f"[CHECKOUT] unreadable price/quantity on product {pid}, skipping line")
            continue
        if qty < 1 or unit_price < 0:
            log.warning(f"[CHECKOUT] non-positive quantity or negative price on product {pid}, skipping line")
            continue
        lines.append({
            "product_id": pid,
            "quantity": qty,
            "unit_price": unit_price,
            "total_price": crud.money(unit_price * qty),
        })
    return lines


def order_total(lines: List[Dict[str, Any]], total=None, shipping=0, tax=0) -> Decimal:
    if total is not None:
        try:
            value = crud.money(total)
        except InvalidOperation:
            raise ValidationFailed("Invalid order total")
    else:
        value = crud.money(sum((l["total_price"] for l in lines), Decimal("0")) + crud.money(shipping) + crud.money(tax))
    if value <= 0:
        raise ValidationFailed("Order total must be greater than zero")
    return value


async def _unique_order_number(db: AsyncSession) -> str:
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number()
        if not await crud.order_number_exists(db, candidate):
            return candidate
        log.info(f"[CHECKOUT] order number {candidate} taken, regenerating")
    # the unique constraint on orders.order_number still guards the insert
    return generate_order_number()


async def _place_order(db: AsyncSession, user_id: str, items, shipping_address, billing_address,
                       total, shipping, tax) -> Dict[str, Any]:
    # 1) credit check
    profile = await crud.get_profile(db, user_id)
    if profile is None:
        raise NotFound("User profile not found")
    lines = build_order_lines(items)
    amount = order_total(lines, total, shipping, tax)
    available = crud.money(profile.credit_limit) - crud.money(profile.credit_used)
    if available < amount:
        log.info(f"[CHECKOUT] user={user_id} insufficient credit: available={available} total={amount}")
        raise InsufficientCredit(available=float(available), total=float(amount))

    # 2) cart validation
    if not lines:
        raise NoValidItems()

    # 3) order row
    try:
        order = await crud.insert_order(db, {
            "order_number": await _unique_order_number(db),
            "user_id": user_id,
            "total_amount": amount,
            "payment_method": "Credit Line",
            "status": "pending",
            "shipping_address": format_address(shipping_address),
            "billing_address": format_address(billing_address or shipping_address),
        })
    except SQLAlchemyError:
        log.exception(f"[CHECKOUT] order insert failed for user={user_id}")
        raise OrderCreateFailed()

    # 4) order items
    try:
        await crud.insert_order_items(db, [{**line, "order_id": order.id} for line in lines])
    except SQLAlchemyError:
        log.exception(f"[CHECKOUT] order item insert failed for order={order.id}")
        raise ItemInsertFailed()

    # 5) credit draw, conditional on the line still covering the total
    try:
        credit_used = await crud.charge_credit(db, user_id, amount)
    except SQLAlchemyError:
        log.exception(f"[CHECKOUT] credit update failed for user={user_id}")
        raise CreditUpdateFailed()
    if credit_used is None:
        log.info(f"[CHECKOUT] user={user_id} credit consumed concurrently, aborting order {order.order_number}")
        raise InsufficientCredit()

    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "total": float(amount),
        "items": len(lines),
        "userId": user_id,
        "creditUsed": float(credit_used),
    }


async def place_order(db: AsyncSession, user_id: str, items: List[Dict[str, Any]],
                      shipping_address: Optional[Dict[str, Any]] = None,
                      billing_address: Optional[Dict[str, Any]] = None,
                      total=None, shipping=0, tax=0) -> Dict[str, Any]:
    """
    Place an order against the user's credit line. Every write happens in the
    caller's session and is committed once at the end; any failure rolls the
    whole checkout back.
    """
    log.info(f"[CHECKOUT] user={user_id} lines={len(items or [])} total={total}")
    try:
        result = await _place_order(db, user_id, items, shipping_address, billing_address, total, shipping, tax)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    log.info(f"[CHECKOUT] order {result['orderNumber']} placed for user={user_id} total={result['total']}")
    return result
