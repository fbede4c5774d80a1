# marketplace/app.py
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config
from .cache import TTLCache
from .db import engine, Base
from .errors import MarketplaceError
from .events import EventBus
from .services.identity import build_identity_provider

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


app = FastAPI(
    title="B2B Marketplace Backend",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.identity = build_identity_provider()
app.state.events = EventBus()
app.state.cache = TTLCache()
app.state.cache.attach(app.state.events)


# ---------- error envelope ----------
@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    if exc.status_code >= 500:
        log.error(f"[API] {request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail), "code": f"http_{exc.status_code}"},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}"
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Validation failed", "code": "validation_failed", "details": details},
    )


# Routers
from . import admin, auth, categories, chat, deals, orders, products

app.include_router(auth.router)
app.include_router(products.router)
app.include_router(categories.router)
app.include_router(categories.admin_router)
app.include_router(deals.router)
app.include_router(deals.admin_router)
app.include_router(orders.checkout_router)
app.include_router(orders.router)
app.include_router(orders.admin_router)
app.include_router(chat.router)
app.include_router(admin.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


def main():
    uvicorn.run("marketplace.app:app", host="0.0.0.0", port=config.PORT, reload=False)


if __name__ == "__main__":
    main()
