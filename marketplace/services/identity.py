# marketplace/services/identity.py
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from jose import jwt, JWTError
from passlib.context import CryptContext
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from .. import config, crud
from ..db import AsyncSessionLocal
from ..errors import IdentityAlreadyExists, IdentityProviderError, Unauthorized
from ..models import AuthUser

log = logging.getLogger(__name__)


class Identity(BaseModel):
    id: str
    email: str


def create_access_token(data: dict, expires_delta: int = config.ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + timedelta(minutes=expires_delta)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)


class LocalIdentityProvider:
    """Identities kept in our own auth_users table, bcrypt hashes, HS256 bearer tokens."""

    def __init__(self, session_factory=AsyncSessionLocal, bcrypt_rounds: int = config.BCRYPT_ROUNDS):
        self.session_factory = session_factory
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=bcrypt_rounds)

    async def list_by_email(self, email: str) -> List[Identity]:
        async with self.session_factory() as db:
            rows = await crud.get_auth_users_by_email(db, email)
            return [Identity(id=r.id, email=r.email) for r in rows]

    async def get(self, user_id: str) -> Optional[Identity]:
        async with self.session_factory() as db:
            row = await crud.get_auth_user(db, user_id)
            return Identity(id=row.id, email=row.email) if row else None

    async def create(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> Identity:
        async with self.session_factory() as db:
            user = AuthUser(email=email.strip().lower(), password_hash=self.pwd_context.hash(password))
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise IdentityAlreadyExists()
            log.info(f"[IDENTITY] created local identity {user.id} for {user.email}")
            return Identity(id=user.id, email=user.email)

    async def delete(self, user_id: str) -> None:
        async with self.session_factory() as db:
            removed = await crud.delete_auth_user(db, user_id)
            await db.commit()
        if not removed:
            log.warning(f"[IDENTITY] delete: identity {user_id} already gone")

    async def update_password(self, user_id: str, password: str) -> None:
        async with self.session_factory() as db:
            row = await crud.get_auth_user(db, user_id)
            if row is None:
                raise IdentityProviderError("User not found in authentication system")
            row.password_hash = self.pwd_context.hash(password)
            await db.commit()

    async def verify_password(self, user_id: str, password: str) -> bool:
        async with self.session_factory() as db:
            row = await crud.get_auth_user(db, user_id)
            return bool(row) and self.pwd_context.verify(password, row.password_hash)

    async def sign_in(self, email: str, password: str) -> str:
        async with self.session_factory() as db:
            rows = await crud.get_auth_users_by_email(db, email)
            user = rows[0] if rows else None
            if not user or not self.pwd_context.verify(password, user.password_hash):
                raise Unauthorized("Invalid email or password")
            user.last_sign_in_at = datetime.utcnow()
            await db.commit()
            return create_access_token({"sub": user.id, "email": user.email})

    async def verify_token(self, token: str) -> Identity:
        try:
            payload = jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
        except JWTError:
            raise Unauthorized("Invalid token")
        user_id = payload.get("sub")
        if not user_id:
            raise Unauthorized("Invalid token")
        identity = await self.get(user_id)
        if identity is None:
            raise Unauthorized("Invalid token")
        return identity


class RemoteIdentityProvider:
    """
    GoTrue-compatible admin REST API. Admin calls authenticate with the
    service-role key, user calls (sign in, token check) with the anon key.
    """
    per_page = 1000

    def __init__(self, base_url: str, anon_key: str, service_key: str,
                 timeout: float = 15, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.service_key = service_key
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _admin_headers(self) -> Dict[str, str]:
        return {"apikey": self.service_key, "Authorization": f"Bearer {self.service_key}"}

    @staticmethod
    def _error_message(r: httpx.Response) -> str:
        try:
            body = r.json()
        except ValueError:
            return r.text or f"HTTP {r.status_code}"
        if not isinstance(body, dict):
            return str(body)
        return (body.get("msg") or body.get("message") or body.get("error_description")
                or body.get("error") or f"HTTP {r.status_code}")

    def _raise_for_status(self, r: httpx.Response, action: str) -> None:
        if r.status_code < 400:
            return
        msg = self._error_message(r)
        log.warning(f"[IDENTITY] {action} failed: {r.status_code} {msg}")
        if r.status_code == 422 and "already" in msg.lower():
            raise IdentityAlreadyExists(msg)
        try:
            code = r.json().get("error_code")
        except (ValueError, AttributeError):
            code = None
        if code == "email_exists":
            raise IdentityAlreadyExists(msg)
        raise IdentityProviderError(msg)

    @staticmethod
    def _identity(data: Dict[str, Any]) -> Identity:
        # admin endpoints answer either the user object or {"user": {...}}
        user = data.get("user", data) if isinstance(data, dict) else {}
        return Identity(id=user["id"], email=user.get("email") or "")

    async def list_by_email(self, email: str) -> List[Identity]:
        wanted = email.strip().lower()
        found: List[Identity] = []
        page = 1
        async with self._client() as client:
            while True:
                r = await client.get(
                    "/auth/v1/admin/users",
                    params={"page": page, "per_page": self.per_page},
                    headers=self._admin_headers(),
                )
                self._raise_for_status(r, "list users")
                users = r.json().get("users", [])
                found.extend(
                    Identity(id=u["id"], email=u.get("email") or "")
                    for u in users if (u.get("email") or "").lower() == wanted
                )
                if len(users) < self.per_page:
                    break
                page += 1
        return found

    async def get(self, user_id: str) -> Optional[Identity]:
        async with self._client() as client:
            r = await client.get(f"/auth/v1/admin/users/{user_id}", headers=self._admin_headers())
        if r.status_code == 404:
            return None
        self._raise_for_status(r, "get user")
        return self._identity(r.json())

    async def create(self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None) -> Identity:
        payload = {"email": email, "password": password, "email_confirm": True, "user_metadata": metadata or {}}
        async with self._client() as client:
            r = await client.post("/auth/v1/admin/users", json=payload, headers=self._admin_headers())
        self._raise_for_status(r, "create user")
        identity = self._identity(r.json())
        log.info(f"[IDENTITY] created remote identity {identity.id} for {email}")
        return identity

    async def delete(self, user_id: str) -> None:
        async with self._client() as client:
            r = await client.delete(f"/auth/v1/admin/users/{user_id}", headers=self._admin_headers())
        if r.status_code == 404:
            log.warning(f"[IDENTITY] delete: identity {user_id} already gone")
            return
        self._raise_for_status(r, "delete user")

    async def update_password(self, user_id: str, password: str) -> None:
        async with self._client() as client:
            r = await client.put(
                f"/auth/v1/admin/users/{user_id}", json={"password": password}, headers=self._admin_headers()
            )
        self._raise_for_status(r, "update password")

    async def sign_in(self, email: str, password: str) -> str:
        async with self._client() as client:
            r = await client.post(
                "/auth/v1/token",
                params={"grant_type": "password"},
                json={"email": email, "password": password},
                headers={"apikey": self.anon_key},
            )
        if r.status_code in (400, 401):
            raise Unauthorized("Invalid email or password")
        self._raise_for_status(r, "sign in")
        return r.json()["access_token"]

    async def verify_password(self, user_id: str, password: str) -> bool:
        identity = await self.get(user_id)
        if identity is None:
            return False
        try:
            await self.sign_in(identity.email, password)
        except Unauthorized:
            return False
        return True

    async def verify_token(self, token: str) -> Identity:
        async with self._client() as client:
            r = await client.get(
                "/auth/v1/user",
                headers={"apikey": self.anon_key, "Authorization": f"Bearer {token}"},
            )
        if r.status_code in (401, 403):
            raise Unauthorized("Invalid token")
        self._raise_for_status(r, "verify token")
        return self._identity(r.json())


def build_identity_provider():
    if config.AUTH_PROVIDER == "remote":
        config.require_remote_auth_settings()
        return RemoteIdentityProvider(config.AUTH_API_URL, config.AUTH_ANON_KEY, config.AUTH_SERVICE_ROLE_KEY)
    if config.AUTH_PROVIDER != "local":
        raise RuntimeError(f"Unknown AUTH_PROVIDER: {config.AUTH_PROVIDER}")
    return LocalIdentityProvider()
