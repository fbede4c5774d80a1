# marketplace/products.py
import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud
from .cache import CACHE_KEYS, product_detail_key
from .db import get_db
from .deps import require_admin, get_cache, get_events
from .errors import NotFound, ValidationFailed
from .events import emit_product_change

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

PRODUCT_STATUSES = ("active", "inactive", "out_of_stock")


class ProductIn(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None
    category_id: Any = None
    price: Any = None
    stock_quantity: Any = None
    status: Optional[str] = None
    image_url: Optional[str] = None
    is_featured: bool = False


def _is_number(v) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def validate_product(p: ProductIn) -> List[str]:
    errors = []
    if not p.name or not p.name.strip():
        errors.append("Product name is required")
    if not p.sku or not p.sku.strip():
        errors.append("SKU is required")
    if not isinstance(p.category_id, int) or isinstance(p.category_id, bool):
        errors.append("Category ID is required and must be a number")
    if not _is_number(p.price) or p.price <= 0:
        errors.append("Price is required and must be greater than 0")
    if p.stock_quantity is not None and (not _is_number(p.stock_quantity) or p.stock_quantity < 0):
        errors.append("Stock quantity must be a non-negative number")
    if p.status and p.status not in PRODUCT_STATUSES:
        errors.append(f"Status must be one of: {', '.join(PRODUCT_STATUSES)}")
    return errors


def product_values(p: ProductIn) -> dict:
    return {
        "name": p.name.strip(),
        "sku": p.sku.strip(),
        "description": (p.description or "").strip() or None,
        "category_id": p.category_id,
        "price": crud.money(p.price),
        "stock_quantity": int(p.stock_quantity or 0),
        "status": p.status or "active",
        "image_url": p.image_url or None,
        "is_featured": bool(p.is_featured),
    }


def serialize_product(product, category_name: Optional[str] = None) -> dict:
    data = crud.row_to_dict(product)
    data["category_name"] = category_name or "Uncategorized"
    return data


async def _checked_values(db: AsyncSession, payload: ProductIn) -> dict:
    errors = validate_product(payload)
    if errors:
        raise ValidationFailed("Validation failed", details=errors)
    if await crud.get_category(db, payload.category_id) is None:
        raise ValidationFailed("Validation failed", details=["Category does not exist"])
    values = product_values(payload)
    existing = await crud.get_product_by_sku(db, values["sku"])
    if existing is not None and existing.id != payload.id:
        raise ValidationFailed(f"A product with SKU {values['sku']} already exists")
    return values


@router.get("")
async def list_products(
    featured: bool = False,
    category: Optional[int] = None,
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    cache=Depends(get_cache),
):
    # only the unfiltered listings are cached
    key = None
    if category is None and limit is None:
        key = CACHE_KEYS["PRODUCTS_FEATURED"] if featured else CACHE_KEYS["PRODUCTS"]
        cached = cache.get(key)
        if cached is not None:
            return {"success": True, "data": cached, "count": len(cached)}

    rows = await crud.list_products(db, featured=featured, category_id=category, limit=limit)
    data = [serialize_product(p, cat_name) for p, cat_name in rows]
    if key:
        cache.set(key, data)
    return {"success": True, "data": data, "count": len(data)}


@router.get("/{product_id}")
async def get_product(product_id: int, db: AsyncSession = Depends(get_db), cache=Depends(get_cache)):
    cached = cache.get(product_detail_key(product_id))
    if cached is not None:
        return {"success": True, "data": cached}
    product = await crud.get_product(db, product_id)
    if product is None:
        raise NotFound("Product not found")
    category = await crud.get_category(db, product.category_id) if product.category_id else None
    data = serialize_product(product, category.name if category else None)
    cache.set(product_detail_key(product_id), data)
    return {"success": True, "data": data}


@router.post("", status_code=201)
async def create_product(
    payload: ProductIn,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    events=Depends(get_events),
):
    values = await _checked_values(db, payload)
    try:
        product = await crud.insert_product(db, values)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationFailed(f"A product with SKU {values['sku']} already exists")
    data = crud.row_to_dict(product)
    log.info(f"[PRODUCTS] {admin.email} created product {product.id} ({product.sku})")
    emit_product_change(events, "added", data)
    return {"success": True, "data": data, "message": "Product created successfully"}


@router.put("")
async def update_product(
    payload: ProductIn,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    events=Depends(get_events),
):
    if not payload.id:
        raise ValidationFailed("Product ID is required")
    values = await _checked_values(db, payload)
    try:
        product = await crud.update_product(db, payload.id, values)
        if product is None:
            raise NotFound("Product not found")
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationFailed(f"A product with SKU {values['sku']} already exists")
    data = crud.row_to_dict(product)
    log.info(f"[PRODUCTS] {admin.email} updated product {product.id}")
    emit_product_change(events, "updated", data)
    return {"success": True, "data": data, "message": "Product updated successfully"}


@router.delete("")
async def delete_product(
    id: Optional[str] = None,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    events=Depends(get_events),
):
    if not id:
        raise ValidationFailed("Product ID is required")
    if not id.strip().isdigit():
        raise ValidationFailed("Invalid product ID")
    product = await crud.get_product(db, int(id))
    if product is None:
        raise NotFound("Product not found")
    data = crud.row_to_dict(product)
    await crud.delete_product(db, product.id)
    await db.commit()
    log.info(f"[PRODUCTS] {admin.email} deleted product {product.id} ({product.name})")
    emit_product_change(events, "deleted", data)
    return {"success": True, "message": "Product deleted successfully", "data": data}
