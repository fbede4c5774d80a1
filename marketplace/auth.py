# marketplace/auth.py
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud
from .db import get_db
from .deps import get_current_profile, get_identity_provider
from .errors import Unauthorized, IdentityProviderError
from .services.accounts import serialize_profile, change_password

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class ChangePasswordIn(BaseModel):
    newPassword: str
    currentPassword: Optional[str] = None


@router.post("/login")
async def login(payload: LoginIn, db: AsyncSession = Depends(get_db), identity=Depends(get_identity_provider)):
    email = payload.email.strip().lower()
    profiles = [p for p in await crud.get_profiles_by_email(db, email) if p.status == "active"]
    if not profiles:
        log.info(f"[AUTH] no active profile for {email}")
        raise Unauthorized("Invalid email or password")
    profile = profiles[0]

    # sign in with the identity's own email, which can differ from the profile's
    user = await identity.get(profile.id)
    if user is None:
        log.error(f"[AUTH] profile {profile.id} has no identity record")
        raise IdentityProviderError("Authentication system error")
    token = await identity.sign_in(user.email, payload.password)

    await crud.update_profile(db, profile.id, {"last_login": datetime.utcnow()})
    await db.commit()
    log.info(f"[AUTH] login ok for {email}")
    return {
        "success": True,
        "access_token": token,
        "token_type": "bearer",
        "user": serialize_profile(profile),
        "message": "Login successful",
    }


@router.get("/profile")
async def my_profile(profile=Depends(get_current_profile)):
    return {"success": True, "profile": serialize_profile(profile)}


@router.post("/change-password")
async def change_my_password(
    payload: ChangePasswordIn,
    profile=Depends(get_current_profile),
    db: AsyncSession = Depends(get_db),
    identity=Depends(get_identity_provider),
):
    await change_password(db, identity, profile, payload.newPassword, payload.currentPassword)
    log.info(f"[AUTH] password changed for {profile.email}")
    return {"success": True, "message": "Password updated successfully"}
