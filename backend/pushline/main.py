"""
pushline — FastAPI backend entry point.

Serves the subscription registry and the notification broadcast API that
feed the background push worker (pushline.worker).
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pushline.api import health, manifest, notifications, push
from pushline.config import settings
from pushline.database import create_tables
from pushline.services.push_service import VapidConfigError
from pushline.services.registry import build_registry

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    backend = settings.REGISTRY_BACKEND
    if backend == "sql":
        create_tables()
    registry = build_registry(backend)
    await registry.connect()
    app.state.registry = registry
    logger.info("Subscription registry: %s", backend)

    if not (settings.VAPID_PUBLIC_KEY and settings.VAPID_PRIVATE_KEY):
        logger.warning("Push notifications disabled - VAPID keys not configured")
    yield
    await registry.close()


app = FastAPI(
    title="pushline",
    description="Web Push subscription registry and notification dispatch",
    version="1.0.0",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
# allow_origins=["*"] is incompatible with allow_credentials=True in the CORS
# standard. When the wildcard is present (dev), switch to allow_origin_regex=".*"
# which achieves the same effect without triggering Starlette's guard.
_cors_origins = [o for o in settings.CORS_ORIGINS if o != "*"]
_cors_regex = ".*" if len(_cors_origins) < len(settings.CORS_ORIGINS) else None

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_origin_regex=_cors_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(health.router)
app.include_router(manifest.router)
app.include_router(push.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")

# ---------------------------------------------------------------------------
# Custom exception handlers
# ---------------------------------------------------------------------------


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(VapidConfigError)
async def vapid_config_error_handler(request: Request, exc: VapidConfigError) -> JSONResponse:
    logger.error("Notification dispatch unavailable: %s", exc)
    return JSONResponse(status_code=503, content={"detail": f"Push notifications not configured: {exc}"})
