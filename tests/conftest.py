import asyncio
import os
import tempfile
from pathlib import Path

_DB_FILE = Path(tempfile.mkdtemp()) / "marketplace_test.db"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_FILE}"
os.environ["AUTH_PROVIDER"] = "local"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["DEEP_CLEAN_SETTLE_SECONDS"] = "0"
os.environ["IDENTITY_POLL_INTERVAL"] = "0"
os.environ["IDENTITY_POLL_ATTEMPTS"] = "2"
os.environ["IDENTITY_CREATE_RETRIES"] = "1"

import pytest
from fastapi.testclient import TestClient

from marketplace import crud
from marketplace.app import app
from marketplace.db import engine, Base, AsyncSessionLocal
from marketplace.services.identity import create_access_token


async def _reset_schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


def run(coro):
    return asyncio.run(coro)


async def _with_session(fn):
    async with AsyncSessionLocal() as db:
        result = await fn(db)
        await db.commit()
        return result


def in_session(fn):
    """Run ``fn(db)`` in a fresh session and commit."""
    return run(_with_session(fn))


@pytest.fixture(autouse=True)
def fresh_db():
    run(_reset_schema())
    app.state.cache.clear()
    yield


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def identity():
    return app.state.identity


@pytest.fixture
def make_user(identity):
    def _make(email="buyer@example.com", name="Buyer", is_admin=False, credit_limit=0,
              credit_used=0, status="active", password="secret123"):
        created = run(identity.create(email, password, {"name": name}))
        in_session(lambda db: crud.insert_profile(db, {
            "id": created.id,
            "name": name,
            "email": email,
            "account_type": "business",
            "credit_limit": crud.money(credit_limit),
            "credit_used": crud.money(credit_used),
            "is_admin": is_admin,
            "status": status,
        }))
        token = create_access_token({"sub": created.id, "email": email})
        return created.id, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", name="Admin", is_admin=True)
