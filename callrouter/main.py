"""callrouter — FastAPI application entry point."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from sqlalchemy import text

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from callrouter.config import settings
from callrouter.database import async_session, engine, init_db
from callrouter.logging_config import setup_logging

from callrouter.api.config import router as config_router
from callrouter.api.incidents import router as incidents_router
from callrouter.api.telephony import router as telephony_router
from callrouter.api.users import router as users_router
from callrouter.api.websocket import manager as ws_manager
from callrouter.api.websocket import router as websocket_router
from callrouter.observability.metrics import metrics
from callrouter.routing.engine import EscalationEngine
from callrouter.services.telephony import HttpTelephonyGateway, build_gateway
from callrouter.workers.scheduler import scheduler

logger = logging.getLogger("callrouter")

VERSION = "0.1.0"

# Rate limiter
limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])


def _startup_checks() -> None:
    """Log warnings for misconfigured or missing settings."""
    startup_errors: list[str] = []

    if settings.is_production and not settings.cors_origins_list:
        msg = "APP_ENV=production but CORS_ORIGINS is empty"
        logger.warning(f"⚠  {msg}")
        startup_errors.append(msg)

    if settings.is_production and "sqlite" in settings.database_url:
        msg = "APP_ENV=production with SQLite; use PostgreSQL for reliability"
        logger.warning(f"⚠  {msg}")

    if settings.is_production and not settings.webhook_shared_secret:
        msg = "APP_ENV=production but WEBHOOK_SHARED_SECRET is empty"
        logger.warning(f"⚠  {msg}")
        startup_errors.append(msg)

    if settings.is_production and not settings.telephony_gateway_url:
        msg = "APP_ENV=production but TELEPHONY_GATEWAY_URL is empty; no calls will be placed"
        logger.warning(f"⚠  {msg}")
        startup_errors.append(msg)

    if settings.strict_startup_validation and startup_errors:
        raise RuntimeError("Startup validation failed: " + " | ".join(startup_errors))

    if "sqlite" in settings.database_url:
        logger.info("○ Using SQLite — consider PostgreSQL for production workloads")
    if settings.telephony_gateway_url:
        logger.info(f"✓ Telephony gateway: {settings.telephony_gateway_url}")
    else:
        logger.info("○ No TELEPHONY_GATEWAY_URL — outbound calls are only logged")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    setup_logging(settings.log_level)
    _startup_checks()

    await init_db()
    gateway = build_gateway()
    routing_engine = EscalationEngine(
        async_session,
        gateway,
        claim_window_seconds=settings.claim_window_seconds,
        ring_grace_seconds=settings.ring_grace_seconds,
        publisher=ws_manager.publish_incident,
    )
    app.state.engine = routing_engine
    logger.info("✦ callrouter API started")
    logger.info(f"  Database: {settings.database_url}")
    logger.info(f"  Sweep interval: {settings.sweep_interval_seconds}s")

    await scheduler.start(routing_engine)

    yield

    await scheduler.stop()
    await routing_engine.shutdown()
    if isinstance(gateway, HttpTelephonyGateway):
        await gateway.drain()
    logger.info("✦ callrouter API shutting down")


app = FastAPI(
    title="callrouter",
    description="Emergency call escalation and on-call routing API",
    version=VERSION,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request tracing + access log middleware
@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start = time.perf_counter()

    response: Response = await call_next(request)

    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    metrics.observe_request(request.url.path, response.status_code, duration_ms)
    logger.info(
        "request completed",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response


# Security headers middleware
@app.middleware("http")
async def security_headers(request: Request, call_next):
    response: Response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'; base-uri 'self'"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# Routers
app.include_router(telephony_router)
app.include_router(incidents_router)
app.include_router(config_router)
app.include_router(users_router)
app.include_router(websocket_router)


@app.get("/")
async def root():
    return JSONResponse(
        {
            "service": "callrouter-api",
            "status": "ok",
            "endpoints": {
                "health": "/api/health",
                "docs": "/docs",
            },
        }
    )


async def _db_ready() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.exception("database readiness check failed")
        return False


@app.get("/api/health")
async def health_check():
    database_ready = await _db_ready()
    status = "healthy" if database_ready else "degraded"
    routing_engine = getattr(app.state, "engine", None)

    return {
        "status": status,
        "service": "callrouter",
        "version": VERSION,
        "websocket_connections": ws_manager.connection_count,
        "scheduler_active": scheduler.running,
        "pending_claim_timers": len(routing_engine.timers) if routing_engine else 0,
        "database_ready": database_ready,
    }


@app.get("/api/health/live")
async def liveness_check():
    return {"status": "alive", "service": "callrouter"}


@app.get("/api/metrics")
async def get_metrics():
    return {
        "service": "callrouter",
        "version": VERSION,
        "metrics": metrics.snapshot(),
    }


@app.get("/api/health/ready")
async def readiness_check(response: Response):
    database_ready = await _db_ready()
    scheduler_ready = scheduler.running
    ready = database_ready and scheduler_ready

    if not ready:
        response.status_code = 503

    return {
        "status": "ready" if ready else "not_ready",
        "checks": {
            "database": database_ready,
            "scheduler": scheduler_ready,
        },
    }
