# marketplace/admin.py
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud
from .db import get_db
from .deps import require_admin, get_identity_provider
from .errors import NotFound, ValidationFailed
from .models import UserProfile, Product, Order
from .services import accounts

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

ACCOUNT_TYPES = ("business", "personal")
USER_STATUSES = ("active", "inactive", "suspended")


class AddressIn(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None


class CreateUserIn(BaseModel):
    name: str
    email: EmailStr
    accountType: str
    creditLimit: float = 0
    company: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[AddressIn] = None
    isAdmin: bool = False


class UpdateUserIn(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    accountType: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    creditLimit: Optional[float] = None
    creditUsed: Optional[float] = None
    status: Optional[str] = None
    isAdmin: Optional[bool] = None
    address: Optional[AddressIn] = None


class DeepCleanIn(BaseModel):
    email: str
    force: bool = False


class RevenueAdjustmentIn(BaseModel):
    type: str
    amount: float
    reason: str
    userId: Optional[str] = None
    orderIds: Optional[List[int]] = None


# ---------- users ----------
@router.get("/users")
async def list_users(
    status: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    profiles = await crud.list_profiles(db, status=status, search=search, limit=limit)
    return {"success": True, "users": [accounts.serialize_profile(p) for p in profiles]}


@router.post("/users")
async def create_user(
    payload: CreateUserIn,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    identity=Depends(get_identity_provider),
):
    if not payload.name.strip():
        raise ValidationFailed("Name is required")
    if payload.accountType not in ACCOUNT_TYPES:
        raise ValidationFailed(f"Account type must be one of: {', '.join(ACCOUNT_TYPES)}")
    if payload.creditLimit < 0:
        raise ValidationFailed("Credit limit cannot be negative")
    return await accounts.provision_user(db, identity, {
        "name": payload.name,
        "email": payload.email,
        "account_type": payload.accountType,
        "credit_limit": payload.creditLimit,
        "company": payload.company,
        "phone": payload.phone,
        "address": payload.address.model_dump() if payload.address else {},
        "is_admin": payload.isAdmin,
    })


@router.put("/users/{user_id}")
async def update_user(
    user_id: str,
    payload: UpdateUserIn,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    values = {}
    if "name" in changes:
        if not (changes["name"] or "").strip():
            raise ValidationFailed("Name is required")
        values["name"] = changes["name"].strip()
    if changes.get("email"):
        values["email"] = changes["email"]
    if "accountType" in changes:
        if changes["accountType"] not in ACCOUNT_TYPES:
            raise ValidationFailed(f"Account type must be one of: {', '.join(ACCOUNT_TYPES)}")
        values["account_type"] = changes["accountType"]
    if "status" in changes:
        if changes["status"] not in USER_STATUSES:
            raise ValidationFailed(f"Status must be one of: {', '.join(USER_STATUSES)}")
        values["status"] = changes["status"]
    for key, column in (("creditLimit", "credit_limit"), ("creditUsed", "credit_used")):
        if changes.get(key) is not None:
            if changes[key] < 0:
                raise ValidationFailed(f"{key} cannot be negative")
            values[column] = crud.money(changes[key])
    if "company" in changes:
        values["company_name"] = (changes["company"] or "").strip() or None
    if "phone" in changes:
        values["phone"] = (changes["phone"] or "").strip() or None
    if changes.get("isAdmin") is not None:
        values["is_admin"] = changes["isAdmin"]
    if changes.get("address") is not None:
        address = changes["address"]
        for key, column in (("street", "address_street"), ("city", "address_city"),
                            ("state", "address_state"), ("zipCode", "address_zip")):
            if key in address:
                values[column] = (address[key] or "").strip() or None

    profile = await accounts.update_user(db, user_id, values)
    log.info(f"[ADMIN] {admin.email} updated user {user_id}: {sorted(values)}")
    return {"success": True, "user": accounts.serialize_profile(profile)}


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    identity=Depends(get_identity_provider),
):
    return await accounts.delete_user(db, identity, user_id, actor_id=admin.id)


@router.get("/users/{user_id}/check-orders")
async def check_orders(user_id: str, admin=Depends(require_admin), db: AsyncSession = Depends(get_db)):
    if await crud.get_profile(db, user_id) is None:
        raise NotFound("User not found")
    orders = await crud.get_orders_for_user(db, user_id)
    return {"success": True, "hasOrders": len(orders) > 0, "orderCount": len(orders)}


@router.post("/users/{user_id}/reset-password")
async def reset_user_password(
    user_id: str,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    identity=Depends(get_identity_provider),
):
    password = await accounts.reset_password(db, identity, user_id)
    return {"success": True, "password": password, "message": "Password reset successfully"}


@router.post("/deep-clean")
async def deep_clean(
    payload: DeepCleanIn,
    admin=Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    identity=Depends(get_identity_provider),
):
    email = payload.email.strip()
    if not email:
        raise ValidationFailed("Email is required")
    log.info(f"[ADMIN] {admin.email} requested deep clean of {email}")
    return await accounts.deep_clean(db, identity, email, force=payload.force)


# ---------- stats / revenue ----------
@router.get("/stats")
async def stats(admin=Depends(require_admin), db: AsyncSession = Depends(get_db)):
    now = datetime.utcnow()
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_month = (this_month - timedelta(days=1)).replace(day=1)

    base_revenue = await crud.sum_order_totals(db)
    adjustments = await crud.net_revenue_adjustments(db)
    this_month_revenue = await crud.sum_order_totals(db, since=this_month)
    last_month_revenue = await crud.sum_order_totals(db, since=last_month, until=this_month)
    if last_month_revenue > 0:
        growth = float((this_month_revenue - last_month_revenue) / last_month_revenue * 100)
    else:
        growth = 100.0 if this_month_revenue > 0 else 0.0

    return {
        "success": True,
        "stats": {
            "totalUsers": await crud.count_rows(db, UserProfile),
            "totalProducts": await crud.count_rows(db, Product),
            "totalOrders": await crud.count_rows(db, Order),
            "totalRevenue": float(base_revenue + adjustments),
            "monthlyGrowth": round(growth, 1),
            "activeUsers": await crud.count_rows(db, UserProfile, UserProfile.last_login >= now - timedelta(days=30)),
        },
    }


@router.get("/revenue")
async def list_adjustments(admin=Depends(require_admin), db: AsyncSession = Depends(get_db)):
    rows = await crud.list_revenue_adjustments(db)
    return {"success": True, "adjustments": [crud.row_to_dict(r) for r in rows]}


@router.post("/revenue")
async def create_adjustment(payload: RevenueAdjustmentIn, admin=Depends(require_admin), db: AsyncSession = Depends(get_db)):
    if payload.type not in ("add", "subtract"):
        raise ValidationFailed("type must be add or subtract")
    if payload.amount <= 0 or not payload.reason.strip():
        raise ValidationFailed("Missing required fields: type, amount, reason")
    adj = await crud.insert_revenue_adjustment(db, {
        "adjustment_type": payload.type,
        "amount": crud.money(payload.amount),
        "reason": payload.reason.strip(),
        "related_user_id": payload.userId,
        "related_order_ids": payload.orderIds,
        "created_by": admin.id,
    })
    await db.commit()
    log.info(f"[ADMIN] {admin.email} recorded revenue adjustment {adj.id} ({payload.type} {payload.amount})")
    return {"success": True, "adjustment": crud.row_to_dict(adj)}
