# marketplace/deals.py
import logging
import math
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud
from .cache import CACHE_KEYS
from .db import get_db
from .deps import require_admin, get_cache
from .errors import NotFound, ValidationFailed
from .services.pricing import decorate_product

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/deals", tags=["deals"])
admin_router = APIRouter(prefix="/api/admin/deals", tags=["admin"])

DISCOUNT_TYPES = ("percentage", "fixed_amount")
# cached payloads embed time_left
DEALS_CACHE_TTL = 60


class DealIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    deal_type: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    min_purchase_amount: Optional[float] = 0
    max_discount_amount: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    status: Optional[str] = None
    is_featured: Optional[bool] = None
    banner_text: Optional[str] = None
    product_ids: Optional[List[int]] = None
    category_ids: Optional[List[int]] = None


def naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is not None and dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def deal_values(payload: DealIn) -> dict:
    values = payload.model_dump(exclude_unset=True, exclude={"product_ids", "category_ids"})
    for key in ("start_date", "end_date"):
        if key in values:
            values[key] = naive_utc(values[key])
    for key in ("discount_value", "min_purchase_amount", "max_discount_amount"):
        if values.get(key) is not None:
            values[key] = crud.money(values[key])
    if "min_purchase_amount" in values and values["min_purchase_amount"] is None:
        values["min_purchase_amount"] = crud.money(0)
    return values


def check_deal(values: dict) -> None:
    if values.get("discount_type") not in DISCOUNT_TYPES:
        raise ValidationFailed(f"discount_type must be one of: {', '.join(DISCOUNT_TYPES)}")
    if values.get("discount_value") is None or values["discount_value"] <= 0:
        raise ValidationFailed("discount_value must be greater than 0")
    if not values.get("start_date") or not values.get("end_date"):
        raise ValidationFailed("start_date and end_date are required")
    if values["start_date"] >= values["end_date"]:
        raise ValidationFailed("End date must be after start date")


async def check_links(db: AsyncSession, product_ids, category_ids) -> None:
    if product_ids:
        known = await crud.get_product_names(db, product_ids)
        missing = sorted(set(product_ids) - set(known))
        if missing:
            raise ValidationFailed(f"Unknown product ids: {missing}")
    if category_ids:
        known = {c.id for c in await crud.list_categories(db)}
        missing = sorted(set(category_ids) - known)
        if missing:
            raise ValidationFailed(f"Unknown category ids: {missing}")


def serialize_deal(deal, products=None, categories=None) -> dict:
    data = crud.row_to_dict(deal)
    if products is not None:
        data["products"] = products
    if categories is not None:
        data["categories"] = [{"id": c.id, "name": c.name} for c in categories]
    return data


@router.get("")
async def active_deals(
    featured: bool = False,
    type: Optional[str] = None,
    status: str = "active",
    limit: Optional[int] = Query(None, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_cache),
):
    key = None
    if status == "active" and type is None and limit is None:
        key = CACHE_KEYS["FEATURED_DEALS"] if featured else CACHE_KEYS["ALL_DEALS"]
        cached = cache.get(key)
        if cached is not None:
            return {"success": True, "data": cached}

    now = datetime.utcnow()
    deals = await crud.list_active_deals(db, now, status=status, featured=featured, deal_type=type, limit=limit)
    product_map = await crud.deal_products_map(db, [d.id for d in deals])
    data = []
    for deal in deals:
        products = [decorate_product(crud.row_to_dict(p), deal, now) for p in product_map.get(deal.id, [])]
        data.append(serialize_deal(deal, products))
    if key:
        cache.set(key, data, ttl=DEALS_CACHE_TTL)
    return {"success": True, "data": data}


def forget_deals(cache) -> None:
    cache.delete(CACHE_KEYS["FEATURED_DEALS"])
    cache.delete(CACHE_KEYS["ALL_DEALS"])


# ---------- admin ----------
@admin_router.get("")
async def admin_list_deals(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    deal_type: Optional[str] = None,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    total = await crud.count_deals(db, status=status, deal_type=deal_type)
    deals = await crud.list_deals(db, (page - 1) * limit, limit, status=status, deal_type=deal_type)
    product_map = await crud.deal_products_map(db, [d.id for d in deals])
    data = [
        serialize_deal(d, [
            {"product_id": p.id, "name": p.name, "sku": p.sku, "price": float(p.price), "image_url": p.image_url}
            for p in product_map.get(d.id, [])
        ])
        for d in deals
    ]
    return {
        "success": True,
        "data": data,
        "pagination": {"page": page, "limit": limit, "total": total, "totalPages": math.ceil(total / limit)},
    }


@admin_router.post("", status_code=201)
async def create_deal(payload: DealIn, admin=Depends(require_admin), db: AsyncSession = Depends(get_db),
                      cache=Depends(get_cache)):
    if not all([payload.title, payload.deal_type, payload.discount_type, payload.discount_value,
                payload.start_date, payload.end_date]):
        raise ValidationFailed("Missing required fields")
    values = deal_values(payload)
    values.setdefault("status", "active")
    values["is_featured"] = bool(payload.is_featured)
    check_deal(values)
    await check_links(db, payload.product_ids, payload.category_ids)
    try:
        deal = await crud.insert_deal(db, values)
        await crud.replace_deal_products(db, deal.id, payload.product_ids or [])
        await crud.replace_deal_categories(db, deal.id, payload.category_ids or [])
        await db.commit()
    except IntegrityError:
        await db.rollback()
        log.exception("[DEALS] deal insert rejected")
        raise ValidationFailed("Deal references unknown products or categories")
    forget_deals(cache)
    log.info(f"[DEALS] {admin.email} created deal {deal.id} ({deal.title})")
    return {"success": True, "data": serialize_deal(deal)}


@admin_router.get("/{deal_id}")
async def get_deal(deal_id: int, admin=Depends(require_admin), db: AsyncSession = Depends(get_db)):
    deal = await crud.get_deal(db, deal_id)
    if deal is None:
        raise NotFound("Deal not found")
    products = (await crud.deal_products_map(db, [deal_id]))[deal_id]
    categories = (await crud.deal_categories_map(db, [deal_id]))[deal_id]
    product_rows = [crud.row_to_dict(p) for p in products]
    return {"success": True, "data": serialize_deal(deal, product_rows, categories)}


@admin_router.put("/{deal_id}")
async def update_deal(deal_id: int, payload: DealIn, admin=Depends(require_admin), db: AsyncSession = Depends(get_db),
                      cache=Depends(get_cache)):
    deal = await crud.get_deal(db, deal_id)
    if deal is None:
        raise NotFound("Deal not found")
    values = deal_values(payload)
    merged = {**crud.row_to_dict(deal), **values}
    merged["start_date"] = values.get("start_date", deal.start_date)
    merged["end_date"] = values.get("end_date", deal.end_date)
    merged["discount_value"] = values.get("discount_value", deal.discount_value)
    check_deal(merged)
    await check_links(db, payload.product_ids, payload.category_ids)
    try:
        if values:
            deal = await crud.update_deal(db, deal_id, values)
        if payload.product_ids is not None:
            await crud.replace_deal_products(db, deal_id, payload.product_ids)
        if payload.category_ids is not None:
            await crud.replace_deal_categories(db, deal_id, payload.category_ids)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        log.exception(f"[DEALS] update of deal {deal_id} rejected")
        raise ValidationFailed("Deal references unknown products or categories")
    forget_deals(cache)
    log.info(f"[DEALS] {admin.email} updated deal {deal_id}")
    return {"success": True, "data": serialize_deal(deal)}


@admin_router.delete("/{deal_id}")
async def delete_deal(deal_id: int, admin=Depends(require_admin), db: AsyncSession = Depends(get_db),
                      cache=Depends(get_cache)):
    removed = await crud.delete_deal(db, deal_id)
    if not removed:
        await db.rollback()
        raise NotFound("Deal not found")
    await db.commit()
    forget_deals(cache)
    log.info(f"[DEALS] {admin.email} deleted deal {deal_id}")
    return {"success": True, "message": "Deal deleted successfully"}
