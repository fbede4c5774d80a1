from marketplace import db

from conftest import _DB_FILE


def test_relative_sqlite_url_keeps_its_path():
    url = db.clean_database_url("sqlite:///./marketplace.db")
    assert url.drivername == "sqlite+aiosqlite"
    assert url.database == "./marketplace.db"
    assert url.render_as_string() == "sqlite+aiosqlite:///./marketplace.db"


def test_absolute_sqlite_url_keeps_its_path():
    url = db.clean_database_url("sqlite+aiosqlite:////tmp/data/marketplace.db")
    assert url.database == "/tmp/data/marketplace.db"


def test_engine_points_at_configured_file():
    assert db.IS_SQLITE
    assert db.engine.url.database == str(_DB_FILE)


def test_postgres_url_gets_async_driver_and_loses_libpq_params():
    url = db.clean_database_url(
        "postgresql://shop:pw@db.example.com/shop?sslmode=require&channel_binding=require&application_name=api"
    )
    assert url.drivername == "postgresql+asyncpg"
    assert url.host == "db.example.com"
    assert dict(url.query) == {"application_name": "api"}
