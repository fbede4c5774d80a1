# marketplace/config.py
import os
from dotenv import load_dotenv
load_dotenv()

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change_me_long_secret")
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# "local" keeps identities in our own auth_users table,
# "remote" talks to a GoTrue-compatible admin API.
AUTH_PROVIDER = os.getenv("AUTH_PROVIDER", "local").lower()
AUTH_API_URL = os.getenv("AUTH_API_URL")
AUTH_ANON_KEY = os.getenv("AUTH_ANON_KEY")
AUTH_SERVICE_ROLE_KEY = os.getenv("AUTH_SERVICE_ROLE_KEY")

# provider eventual-consistency knobs
IDENTITY_POLL_INTERVAL = float(os.getenv("IDENTITY_POLL_INTERVAL", "1.0"))
IDENTITY_POLL_ATTEMPTS = int(os.getenv("IDENTITY_POLL_ATTEMPTS", "5"))
IDENTITY_CREATE_RETRIES = int(os.getenv("IDENTITY_CREATE_RETRIES", "3"))
DEEP_CLEAN_SETTLE_SECONDS = float(os.getenv("DEEP_CLEAN_SETTLE_SECONDS", "2.0"))

CATEGORIES_CACHE_TTL = float(os.getenv("CATEGORIES_CACHE_TTL", "180"))
CATEGORY_SLUG_CACHE_TTL = float(os.getenv("CATEGORY_SLUG_CACHE_TTL", "300"))

CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if o.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def require_remote_auth_settings():
    missing = [
        name for name, value in (
            ("AUTH_API_URL", AUTH_API_URL),
            ("AUTH_ANON_KEY", AUTH_ANON_KEY),
            ("AUTH_SERVICE_ROLE_KEY", AUTH_SERVICE_ROLE_KEY),
        ) if not value
    ]
    if missing:
        raise RuntimeError(f"Missing auth provider settings: {', '.join(missing)}")

PORT = int(os.getenv("PORT", "8000"))

# bootstrap admin created by seed_db
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@example.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrator")
