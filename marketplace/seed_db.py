# marketplace/seed_db.py
import asyncio
import logging

from dotenv import load_dotenv
load_dotenv()

from . import config, crud
from .categories import DEFAULT_CATEGORIES
from .db import engine, AsyncSessionLocal, Base
from .errors import IdentityAlreadyExists
from .services.accounts import generate_password
from .services.identity import build_identity_provider

log = logging.getLogger(__name__)


async def seed_categories(session) -> int:
    existing = {c.name for c in await crud.list_categories(session)}
    added = 0
    for c in DEFAULT_CATEGORIES:
        if c["name"] in existing:
            continue
        await crud.insert_category(session, {"name": c["name"], "description": c["description"]})
        added += 1
    await session.commit()
    return added


async def seed_admin(session, identity):
    email = config.ADMIN_EMAIL.strip().lower()
    if await crud.get_profiles_by_email(session, email):
        log.info(f"[SEED] admin {email} already has a profile")
        return None

    password = config.ADMIN_PASSWORD or generate_password()
    try:
        created = await identity.create(email, password, {"name": config.ADMIN_NAME})
    except IdentityAlreadyExists:
        log.warning(f"[SEED] identity for {email} exists without a profile; run a deep clean first")
        return None

    try:
        await crud.insert_profile(session, {
            "id": created.id,
            "name": config.ADMIN_NAME,
            "email": email,
            "account_type": "business",
            "is_admin": True,
            "credit_limit": crud.money(0),
            "credit_used": crud.money(0),
            "status": "active",
            "temporary_password": not config.ADMIN_PASSWORD,
        })
        await session.commit()
    except Exception:
        await session.rollback()
        log.warning(f"[SEED] admin profile creation failed, removing identity {created.id}")
        try:
            await identity.delete(created.id)
        except Exception:
            log.exception(f"[SEED] compensation failed: identity {created.id} left behind")
        raise
    return password


async def seed():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    identity = build_identity_provider()
    async with AsyncSessionLocal() as session:
        added = await seed_categories(session)
        password = await seed_admin(session, identity)

    print(f"Seeded DB with {added} categories")
    if password:
        print(f"Admin {config.ADMIN_EMAIL} created, password: {password}")


def main():
    logging.basicConfig(level=config.LOG_LEVEL)
    asyncio.run(seed())


if __name__ == "__main__":
    main()
