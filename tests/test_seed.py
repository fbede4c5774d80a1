import pytest
from sqlalchemy.exc import SQLAlchemyError

from marketplace import config, crud, seed_db

from conftest import in_session, run


def test_seed_is_idempotent(identity, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_EMAIL", "boss@example.com")
    monkeypatch.setattr(config, "ADMIN_PASSWORD", "boss-password")

    assert in_session(seed_db.seed_categories) == 5
    assert in_session(lambda db: seed_db.seed_admin(db, identity)) == "boss-password"

    assert in_session(seed_db.seed_categories) == 0
    assert in_session(lambda db: seed_db.seed_admin(db, identity)) is None

    admins = in_session(lambda db: crud.get_profiles_by_email(db, "boss@example.com"))
    assert len(admins) == 1
    assert admins[0].is_admin is True
    assert admins[0].temporary_password is False


def test_failed_admin_profile_removes_identity(identity, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_EMAIL", "boss@example.com")

    async def broken_insert(db, data):
        raise SQLAlchemyError("disk full")
    monkeypatch.setattr(crud, "insert_profile", broken_insert)

    with pytest.raises(SQLAlchemyError):
        in_session(lambda db: seed_db.seed_admin(db, identity))

    assert run(identity.list_by_email("boss@example.com")) == []
