# marketplace/orders.py
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud
from .db import get_db
from .deps import get_current_profile, require_admin
from .errors import Forbidden, NotFound, ValidationFailed
from .services.checkout import place_order

log = logging.getLogger(__name__)

checkout_router = APIRouter(prefix="/api", tags=["checkout"])
router = APIRouter(prefix="/api/orders", tags=["orders"])
admin_router = APIRouter(prefix="/api/admin/orders", tags=["admin"])

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "completed", "cancelled")


class CartLine(BaseModel):
    id: Union[int, str, None] = None
    name: Optional[str] = None
    price: float = 0
    quantity: int = 1


class Address(BaseModel):
    street: Optional[str] = ""
    city: Optional[str] = ""
    state: Optional[str] = ""
    zipCode: Optional[str] = ""


class CheckoutUser(BaseModel):
    id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class CheckoutIn(BaseModel):
    items: List[CartLine]
    total: Optional[float] = None
    shipping: float = 0
    tax: float = 0
    shippingAddress: Optional[Address] = None
    billingAddress: Optional[Address] = None
    user: Optional[CheckoutUser] = None


class StatusUpdateIn(BaseModel):
    orderId: int
    newStatus: str


def format_items(items, names: Dict[int, str]) -> List[Dict[str, Any]]:
    return [
        {
            "id": i.id,
            "product_id": i.product_id,
            "name": names.get(i.product_id) or f"Product #{i.product_id}",
            "quantity": i.quantity,
            "price": float(i.unit_price),
            "total": float(i.total_price),
        }
        for i in items
    ]


def format_history_row(order, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    estimated = order.estimated_delivery or (order.created_at + timedelta(days=3) if order.created_at else None)
    return {
        "id": order.order_number,
        "orderId": order.id,
        "date": order.created_at.isoformat() if order.created_at else None,
        "status": order.status or "pending",
        "total": float(order.total_amount),
        "items": len(items),
        "paymentMethod": order.payment_method,
        "trackingNumber": order.tracking_number,
        "estimatedDelivery": estimated.isoformat() if estimated else None,
        "actualDelivery": order.delivery_date.isoformat() if order.delivery_date else None,
        "items_detail": items,
    }


async def _items_with_names(db: AsyncSession, orders) -> Dict[int, List[Dict[str, Any]]]:
    items_by_order = await crud.get_order_items(db, [o.id for o in orders])
    names = await crud.get_product_names(
        db, [i.product_id for items in items_by_order.values() for i in items]
    )
    return {oid: format_items(items, names) for oid, items in items_by_order.items()}


@checkout_router.post("/checkout")
async def checkout(
    payload: CheckoutIn,
    profile=Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    if payload.user and payload.user.id and payload.user.id != profile.id:
        raise Forbidden("You can only place orders for your own account")
    result = await place_order(
        db,
        profile.id,
        [line.model_dump() for line in payload.items],
        shipping_address=payload.shippingAddress.model_dump() if payload.shippingAddress else None,
        billing_address=payload.billingAddress.model_dump() if payload.billingAddress else None,
        total=payload.total,
        shipping=payload.shipping,
        tax=payload.tax,
    )
    return {"success": True, "order": result}


@router.get("/history")
async def order_history(
    limit: int = Query(100, ge=1, le=500),
    profile=Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
):
    orders = await crud.get_orders_for_user(db, profile.id, limit=limit)
    items = await _items_with_names(db, orders)
    return {"success": True, "orders": [format_history_row(o, items.get(o.id, [])) for o in orders]}


@router.get("/{order_id}")
async def get_order(order_id: int, profile=Depends(get_current_profile), db: AsyncSession = Depends(get_db)):
    order = await crud.get_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    if order.user_id != profile.id and not profile.is_admin:
        raise Forbidden("Access denied")
    items = await _items_with_names(db, [order])
    return {"success": True, "order": {**crud.row_to_dict(order), "items": items.get(order.id, [])}}


# ---------- admin ----------
@admin_router.get("")
async def admin_orders(
    status: Optional[str] = None,
    limit: int = Query(500, ge=1, le=1000),
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    orders = await crud.list_orders(db, status=status, limit=limit)
    profiles = await crud.get_profiles_by_ids(db, [o.user_id for o in orders])
    items = await _items_with_names(db, orders)
    data = []
    for o in orders:
        p = profiles.get(o.user_id)
        data.append({
            **crud.row_to_dict(o),
            "user": {"id": p.id, "name": p.name, "email": p.email, "company": p.company_name} if p else None,
            "items": items.get(o.id, []),
        })
    return {"success": True, "data": data, "count": len(data)}


@admin_router.post("/update-status")
async def update_order_status(payload: StatusUpdateIn, admin=Depends(require_admin), db: AsyncSession = Depends(get_db)):
    if payload.newStatus not in ORDER_STATUSES:
        raise ValidationFailed(f"Status must be one of: {', '.join(ORDER_STATUSES)}")
    updated = await crud.update_order_status(db, payload.orderId, payload.newStatus)
    if not updated:
        await db.rollback()
        raise NotFound("Order not found")
    await db.commit()
    log.info(f"[ORDERS] {admin.email} set order {payload.orderId} to {payload.newStatus}")
    return {"success": True, "message": f"Order status updated to {payload.newStatus}"}


@admin_router.delete("/{order_id}")
async def delete_order(order_id: int, admin=Depends(require_admin), db: AsyncSession = Depends(get_db)):
    order = await crud.get_order(db, order_id)
    if order is None:
        raise NotFound("Order not found")
    await crud.delete_order_items(db, [order_id])
    await crud.delete_order(db, order_id)
    await db.commit()
    log.info(f"[ORDERS] {admin.email} deleted order {order.order_number}")
    return {"success": True, "message": f"Order {order.order_number} deleted"}
