import json
from contextlib import asynccontextmanager

from sqlalchemy import text

from app.core.errors import CampaignEngineError
from app.core.observability import (
    engine_error_handler,
    http_exception_handler,
    logger,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.db.session import SessionLocal, engine
from app.routers import campaigns, customers, receipts, segments
from app.services.engine import build_engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests and embedding callers may install a prebuilt engine before startup.
    campaign_engine = getattr(app.state, "campaign_engine", None)
    owns_engine = campaign_engine is None
    if owns_engine:
        campaign_engine = build_engine(SessionLocal, settings)
        app.state.campaign_engine = campaign_engine

    if settings.scheduler_enabled:
        campaign_engine.scheduler.start()
    logger.info(json.dumps({"event": "startup", "scheduler_enabled": settings.scheduler_enabled}))
    try:
        yield
    finally:
        campaign_engine.scheduler.stop()
        if owns_engine:
            app.state.campaign_engine = None
        logger.info(json.dumps({"event": "shutdown"}))


app = FastAPI(
    title=settings.app_name,
    version="0.3.0",
    description=(
        "Campaign orchestration API.\n\n"
        "Swagger quick test flow:\n"
        "1. Ingest customers with `POST /customers` and orders with `POST /customers/orders`.\n"
        "2. Send an `X-User-Id` header on operator endpoints.\n"
        "3. Create a segment (`POST /segments`), then a campaign (`POST /campaigns`).\n"
        "4. Follow delivery on `GET /campaigns/{id}/progress` and post vendor receipts to `/receipts`."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "customers", "description": "Customer and order ingestion feeding segment attributes."},
        {"name": "segments", "description": "Rule-based audience segments, previews, and plain-language drafting."},
        {"name": "campaigns", "description": "Campaign lifecycle, delivery logs, metrics, and live progress."},
        {"name": "receipts", "description": "Asynchronous vendor delivery receipts."},
    ],
    lifespan=lifespan,
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(CampaignEngineError, engine_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Local dashboards run on dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(customers.router)
app.include_router(segments.router)
app.include_router(campaigns.router)
app.include_router(receipts.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    campaign_engine = getattr(app.state, "campaign_engine", None)
    return {
        "ok": True,
        "scheduler_running": bool(campaign_engine and campaign_engine.scheduler.is_running),
    }
