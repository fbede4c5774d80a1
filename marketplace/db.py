# marketplace/db.py
import os
from dotenv import load_dotenv
load_dotenv()

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from collections.abc import AsyncGenerator

DATABASE_URL = os.environ.get("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL not set in environment")

ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def clean_database_url(url: str, drop_keys=("sslmode", "channel_binding")) -> URL:
    """Switch to the async driver and drop libpq-only query params."""
    u = make_url(url)
    if u.drivername in ASYNC_DRIVERS:
        u = u.set(drivername=ASYNC_DRIVERS[u.drivername])
    return u.difference_update_query(drop_keys)

CLEAN_DATABASE_URL = clean_database_url(DATABASE_URL)
IS_SQLITE = CLEAN_DATABASE_URL.get_backend_name() == "sqlite"

if IS_SQLITE:
    # sqlite file databases: one connection per session, nothing pooled across event loops
    ENGINE_KWARGS = {"poolclass": NullPool}
else:
    ENGINE_KWARGS = {
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "pool_size": 5,
        "max_overflow": 10,
    }

engine = create_async_engine(
    CLEAN_DATABASE_URL,
    echo=False,
    future=True,
    **ENGINE_KWARGS,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
    class_=AsyncSession,
)

class Base(DeclarativeBase):
    pass

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
