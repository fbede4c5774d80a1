# marketplace/deps.py
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud
from .db import get_db
from .errors import Unauthorized, Forbidden, NotFound
from .models import UserProfile

security = HTTPBearer(auto_error=False)


def get_identity_provider(request: Request):
    return request.app.state.identity


def get_events(request: Request):
    return request.app.state.events


def get_cache(request: Request):
    return request.app.state.cache


async def get_current_profile(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    identity=Depends(get_identity_provider),
    db: AsyncSession = Depends(get_db),
) -> UserProfile:
    """bearer token -> identity provider -> profile row."""
    if credentials is None:
        raise Unauthorized("Missing auth token")
    user = await identity.verify_token(credentials.credentials)
    profile = await crud.get_profile(db, user.id)
    if profile is None:
        raise NotFound("User profile not found")
    if profile.status != "active":
        raise Forbidden("Account is not active")
    return profile


async def require_admin(profile: UserProfile = Depends(get_current_profile)) -> UserProfile:
    if not profile.is_admin:
        raise Forbidden("Admin access required")
    return profile
