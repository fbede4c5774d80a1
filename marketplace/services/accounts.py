# marketplace/services/accounts.py
import asyncio
import logging
import secrets
import string
import time
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import config, crud
from ..errors import (
    MarketplaceError, EmailAlreadyRegistered, IdentityAlreadyExists, IdentityLookupFailed,
    NotFound, ProfileCreateFailed, StaleIdentityPersists, ValidationFailed,
)

log = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits
REVENUE_STATUSES = ("delivered", "completed")


def generate_password(length: int = 16) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def anonymized_email() -> str:
    return f"deleted_user_{int(time.time() * 1000)}_{secrets.token_hex(4)}@anonymized.local"


def serialize_profile(p) -> Optional[Dict[str, Any]]:
    if p is None:
        return None
    return {
        "id": p.id,
        "name": p.name,
        "email": p.email,
        "accountType": p.account_type,
        "company": p.company_name,
        "phone": p.phone,
        "isAdmin": bool(p.is_admin),
        "creditLimit": float(p.credit_limit or 0),
        "creditUsed": float(p.credit_used or 0),
        "status": p.status,
        "temporaryPassword": bool(p.temporary_password),
        "address": {
            "street": p.address_street,
            "city": p.address_city,
            "state": p.address_state,
            "zipCode": p.address_zip,
        },
        "lastLogin": p.last_login.isoformat() if p.last_login else None,
        "createdAt": p.created_at.isoformat() if p.created_at else None,
    }


async def purge_user_rows(db: AsyncSession, user_id: str) -> Dict[str, int]:
    """Delete a user's chat, order items, orders and profile, in that order. No commit."""
    orders = await crud.get_orders_for_user(db, user_id)
    counts = {
        "messages": await crud.delete_chat_messages_for_user(db, user_id),
        "conversations": await crud.delete_chat_conversations_for_user(db, user_id),
        "orderItems": await crud.delete_order_items(db, [o.id for o in orders]),
        "orders": await crud.delete_orders_for_user(db, user_id),
        "profiles": await crud.delete_profile(db, user_id),
    }
    return counts


# ---------- provisioning ----------
async def _wait_for_identity_removal(identity, email: str) -> None:
    for attempt in range(1, config.IDENTITY_POLL_ATTEMPTS + 1):
        await asyncio.sleep(config.IDENTITY_POLL_INTERVAL)
        if not await identity.list_by_email(email):
            log.info(f"[PROVISION] stale identity for {email} gone after {attempt} poll(s)")
            return
        log.info(f"[PROVISION] stale identity for {email} still present (poll {attempt})")
    raise StaleIdentityPersists()


async def _create_identity(identity, email: str, password: str, metadata: Dict[str, Any]):
    retries = max(1, config.IDENTITY_CREATE_RETRIES)
    for attempt in range(1, retries + 1):
        try:
            return await identity.create(email, password, metadata)
        except IdentityAlreadyExists:
            if attempt == retries:
                raise
            log.warning(f"[PROVISION] provider still reports {email} as registered, retry {attempt}/{retries}")
            await asyncio.sleep(config.IDENTITY_POLL_INTERVAL)


async def _insert_profile(db: AsyncSession, data: Dict[str, Any]):
    try:
        return await crud.insert_profile(db, data)
    except IntegrityError:
        await db.rollback()
        if await crud.get_profile(db, data["id"]) is None:
            log.exception(f"[PROVISION] profile insert rejected for {data['email']}")
            raise ProfileCreateFailed()
    # id collision: clear the leftover profile and its rows, then retry once
    log.warning(f"[PROVISION] profile id {data['id']} already taken, purging the stale profile")
    await purge_user_rows(db, data["id"])
    try:
        return await crud.insert_profile(db, data)
    except IntegrityError:
        log.exception(f"[PROVISION] profile insert failed again for {data['id']}")
        raise ProfileCreateFailed()


async def provision_user(db: AsyncSession, identity, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create identity + profile with a generated temporary password.
    ``data`` keys: name, email, account_type, credit_limit, company, phone, address, is_admin.
    """
    email = data["email"].strip().lower()
    log.info(f"[PROVISION] creating user {email}")

    if await crud.get_profiles_by_email(db, email):
        raise EmailAlreadyRegistered(f"Email {email} is already registered. Please use a different email address.")

    stale = await identity.list_by_email(email)
    if stale:
        log.info(f"[PROVISION] removing {len(stale)} stale identity record(s) for {email}")
        for s in stale:
            await identity.delete(s.id)
        await _wait_for_identity_removal(identity, email)

    password = generate_password()
    account_type = data.get("account_type") or "personal"
    created = await _create_identity(identity, email, password, {"name": data["name"]})

    address = data.get("address") or {}
    profile_data = {
        "id": created.id,
        "name": data["name"].strip(),
        "email": email,
        "account_type": account_type,
        "company_name": ((data.get("company") or "").strip() or None) if account_type == "business" else None,
        "phone": (data.get("phone") or "").strip() or None,
        "is_admin": bool(data.get("is_admin")),
        "credit_limit": crud.money(data.get("credit_limit")),
        "credit_used": crud.money(0),
        "address_street": (address.get("street") or "").strip() or None,
        "address_city": (address.get("city") or "").strip() or None,
        "address_state": (address.get("state") or "").strip() or None,
        "address_zip": (address.get("zipCode") or "").strip() or None,
        "status": "active",
        "temporary_password": True,
    }
    try:
        profile = await _insert_profile(db, profile_data)
        await db.commit()
    except Exception:
        await db.rollback()
        log.warning(f"[PROVISION] profile creation failed, removing identity {created.id}")
        try:
            await identity.delete(created.id)
        except Exception:
            log.exception(f"[PROVISION] compensation failed: identity {created.id} left behind")
        raise

    log.info(f"[PROVISION] user {email} created with id {created.id}")
    return {"success": True, "user": serialize_profile(profile), "password": password}


# ---------- deep clean ----------
def _error_text(exc: Exception) -> str:
    if isinstance(exc, MarketplaceError):
        return exc.message
    if isinstance(exc, SQLAlchemyError):
        return "Database error"
    return str(exc) or exc.__class__.__name__


async def _db_step(db: AsyncSession, steps: List[Dict[str, Any]], name: str, action,
                   message: Optional[str] = None) -> bool:
    """Run one purge step in its own transaction and record the outcome."""
    try:
        await action()
        await db.commit()
    except Exception as e:
        await db.rollback()
        log.exception(f"[DEEP-CLEAN] step {name} failed")
        steps.append({"step": name, "status": "ERROR", "error": _error_text(e)})
        return False
    entry = {"step": name, "status": "SUCCESS"}
    if message:
        entry["message"] = message
    steps.append(entry)
    return True


async def _clean_identity(db: AsyncSession, identity, user_id: str, force: bool,
                          steps: List[Dict[str, Any]]) -> bool:
    try:
        profile = await crud.get_profile(db, user_id)
    except SQLAlchemyError as e:
        log.exception(f"[DEEP-CLEAN] profile lookup failed for {user_id}")
        steps.append({"step": f"Check Profile ({user_id})", "status": "ERROR", "error": _error_text(e)})
        return False
    steps.append({
        "step": f"Check Profile ({user_id})",
        "status": "SUCCESS",
        "data": {
            "hasProfile": profile is not None,
            "profile": {"email": profile.email, "name": profile.name} if profile else None,
        },
    })

    try:
        orders = await crud.get_orders_for_user(db, user_id)
    except SQLAlchemyError as e:
        log.exception(f"[DEEP-CLEAN] order lookup failed for {user_id}")
        steps.append({"step": f"Check Orders ({user_id})", "status": "ERROR", "error": _error_text(e)})
        return False
    has_orders = len(orders) > 0
    steps.append({
        "step": f"Check Orders ({user_id})",
        "status": "SUCCESS",
        "data": {"hasOrders": has_orders, "orderCount": len(orders)},
    })

    if has_orders and not force:
        if profile is not None:
            ok = await _db_step(
                db, steps, f"Anonymize Profile ({user_id})",
                lambda: crud.anonymize_profile(db, user_id, anonymized_email()),
                message="Profile anonymized to preserve order history",
            )
            if not ok:
                return False
    else:
        await _db_step(db, steps, f"Delete Chat Messages ({user_id})",
                       lambda: crud.delete_chat_messages_for_user(db, user_id))
        await _db_step(db, steps, f"Delete Chat Conversations ({user_id})",
                       lambda: crud.delete_chat_conversations_for_user(db, user_id))
        if has_orders:
            for order in orders:
                await _db_step(db, steps, f"Delete Order Items (Order {order.id})",
                               lambda oid=order.id: crud.delete_order_items(db, [oid]))
            await _db_step(db, steps, f"Delete Orders ({user_id})",
                           lambda: crud.delete_orders_for_user(db, user_id))
        if profile is not None:
            await _db_step(db, steps, f"Delete Profile ({user_id})",
                           lambda: crud.delete_profile(db, user_id))

    try:
        await identity.delete(user_id)
    except Exception as e:
        log.exception(f"[DEEP-CLEAN] identity delete failed for {user_id}")
        steps.append({"step": f"Delete Auth User ({user_id})", "status": "ERROR", "error": _error_text(e)})
        return False
    steps.append({
        "step": f"Delete Auth User ({user_id})",
        "status": "SUCCESS",
        "message": "Auth user deleted successfully",
    })
    return True


async def deep_clean(db: AsyncSession, identity, email: str, force: bool = False) -> Dict[str, Any]:
    """
    Remove or anonymize everything tied to ``email`` so it can be registered
    again. Steps are best effort; the outcome is only a success when every
    matching identity was deleted.
    """
    log.info(f"[DEEP-CLEAN] cleaning {email} (force={force})")
    results: Dict[str, Any] = {"email": email, "steps": [], "success": False, "canProceedWithCreation": False}
    steps = results["steps"]

    try:
        identities = await identity.list_by_email(email)
    except Exception as e:
        log.exception(f"[DEEP-CLEAN] identity lookup failed for {email}")
        steps.append({"step": "Find Auth Users", "status": "ERROR", "error": _error_text(e)})
        raise IdentityLookupFailed(_error_text(e), **{k: v for k, v in results.items() if k != "success"})
    steps.append({
        "step": "Find Auth Users",
        "status": "SUCCESS",
        "data": {"found": len(identities), "users": [i.model_dump() for i in identities]},
    })

    if not identities:
        results["success"] = True
        results["canProceedWithCreation"] = True
        steps.append({"step": "Final Status", "status": "SUCCESS",
                      "message": "No auth users found - email is available for use"})
        return results

    deleted = 0
    for ident in identities:
        try:
            if await _clean_identity(db, identity, ident.id, force, steps):
                deleted += 1
        except Exception as e:
            await db.rollback()
            log.exception(f"[DEEP-CLEAN] processing {ident.id} failed")
            steps.append({"step": f"Process User ({ident.id})", "status": "EXCEPTION", "error": _error_text(e)})

    failed = len(identities) - deleted
    if failed == 0:
        results["success"] = True
        results["canProceedWithCreation"] = True
        steps.append({"step": "Final Status", "status": "SUCCESS",
                      "message": "All auth users cleaned up - email is now available for use"})
        # let the provider settle before the caller re-registers the email
        await asyncio.sleep(config.DEEP_CLEAN_SETTLE_SECONDS)
    else:
        steps.append({"step": "Final Status", "status": "ERROR",
                      "message": f"Failed to delete {failed} auth user(s) - email is still not available"})
    log.info(f"[DEEP-CLEAN] {email}: {deleted}/{len(identities)} identities removed")
    return results


# ---------- admin user management ----------
async def delete_user(db: AsyncSession, identity, user_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    if actor_id and actor_id == user_id:
        raise ValidationFailed("You cannot delete your own account")
    profile = await crud.get_profile(db, user_id)
    if profile is None:
        raise NotFound("User not found")

    try:
        orders = await crud.get_orders_for_user(db, user_id)
        completed = [o for o in orders if o.status in REVENUE_STATUSES]
        revenue = sum((crud.money(o.total_amount) for o in completed), crud.money(0))
        await purge_user_rows(db, user_id)
        if revenue > 0:
            await crud.insert_revenue_adjustment(db, {
                "adjustment_type": "add",
                "amount": revenue,
                "reason": f"Revenue adjustment for completed orders from deleted user: {profile.name or profile.email}",
                "related_user_id": user_id,
                "related_order_ids": [o.id for o in completed],
                "created_by": actor_id,
            })
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    identity_deleted = True
    try:
        await identity.delete(user_id)
    except Exception:
        identity_deleted = False
        log.exception(f"[ACCOUNTS] profile {user_id} deleted but identity removal failed")

    log.info(f"[ACCOUNTS] user {profile.email} deleted with {len(orders)} order(s)")
    return {
        "success": True,
        "action": "deleted",
        "message": (f"User and {len(orders)} orders completely removed. Email is available for reuse."
                    if orders else "User completely removed. Email is available for reuse."),
        "orderCount": len(orders),
        "completedOrdersRevenue": float(revenue),
        "emailFreed": identity_deleted,
    }


async def update_user(db: AsyncSession, user_id: str, values: Dict[str, Any]):
    profile = await crud.get_profile(db, user_id)
    if profile is None:
        raise NotFound("User not found")
    if "email" in values:
        values["email"] = values["email"].strip().lower()
        others = [p for p in await crud.get_profiles_by_email(db, values["email"]) if p.id != user_id]
        if others:
            raise EmailAlreadyRegistered(f"Email {values['email']} is already registered. Please use a different email address.")
    if not values:
        return profile
    try:
        profile = await crud.update_profile(db, user_id, values)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationFailed("Profile update conflicts with an existing user")
    return profile


async def reset_password(db: AsyncSession, identity, user_id: str) -> str:
    profile = await crud.get_profile(db, user_id)
    if profile is None:
        raise NotFound("User not found")
    password = generate_password()
    await identity.update_password(user_id, password)
    await crud.update_profile(db, user_id, {"temporary_password": True})
    await db.commit()
    log.info(f"[ACCOUNTS] password reset for {profile.email}")
    return password


async def change_password(db: AsyncSession, identity, profile, new_password: str,
                          current_password: Optional[str] = None) -> None:
    if not new_password or len(new_password) < 6:
        raise ValidationFailed("Password must be at least 6 characters long")
    if current_password is not None and not await identity.verify_password(profile.id, current_password):
        raise ValidationFailed("Current password is incorrect")
    await identity.update_password(profile.id, new_password)
    await crud.update_profile(db, profile.id, {"temporary_password": False})
    await db.commit()
