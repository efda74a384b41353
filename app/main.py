"""FastAPI application entrypoint: lifespan, routers, middleware."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy import text

from app.config import get_settings
from app.database import engine
from app.middleware.logging import RequestLoggingMiddleware, configure_structured_logging
from app.routes import batches, commands, recipes
from app.services.recipe import get_recipe_registry

logger = structlog.get_logger("cheese")


async def _run_readiness_checks(app: FastAPI) -> dict[str, dict[str, Any]]:
    """Probe every backing dependency; Redis is optional when not configured."""
    checks: dict[str, dict[str, Any]] = {}

    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        checks["database"] = {"ok": True, "message": "ok"}
    except Exception as exc:
        checks["database"] = {"ok": False, "message": str(exc)}

    redis: Redis | None = getattr(app.state, "redis", None)
    if redis is None:
        checks["redis"] = {"ok": True, "message": "disabled"}
    else:
        try:
            await redis.ping()
            checks["redis"] = {"ok": True, "message": "ok"}
        except Exception as exc:
            checks["redis"] = {"ok": False, "message": str(exc)}

    try:
        registry = get_recipe_registry()
        checks["recipes"] = {"ok": True, "message": f"{len(registry.cheese_types)} cheese types"}
    except Exception as exc:
        checks["recipes"] = {"ok": False, "message": str(exc)}
    return checks


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup / shutdown lifecycle.

    Startup:
      1. Initialize structured logging
      2. Load and validate the recipe catalog (a malformed recipe is fatal)
      3. Check the database connection
      4. Connect to Redis when configured (per-batch locks)

    Shutdown:
      1. Close Redis connection pool
      2. Dispose SQLAlchemy engine
    """
    configure_structured_logging()
    settings = get_settings()
    logger.info("queijaria_starting", log_level=settings.log_level, test_mode=settings.test_mode)

    redis: Redis | None = None
    app.state.redis = None
    try:
        registry = get_recipe_registry()
        logger.info("recipes_loaded", cheese_types=sorted(registry.cheese_types))

        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))

        if settings.redis_url:
            redis = Redis.from_url(settings.redis_url, decode_responses=True)
            await redis.ping()
            app.state.redis = redis
    except Exception as exc:
        logger.exception("startup_failure", error=str(exc))
        raise

    yield

    logger.info("queijaria_shutting_down")
    if redis is not None:
        await redis.aclose()
    await engine.dispose()


app = FastAPI(
    title="Queijaria API",
    description=(
        "Cheese production workflow API: drives batches through recipe "
        "stages with input gating, blocking timers, measurement loops and "
        "external wait notifications, for web and voice clients."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── Middleware ──────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


# ── Health check ────────────────────────────────────────────────────────────
@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    """Basic health check: verifies the API process is alive."""
    return {
        "status": "ok",
        "service": "queijaria",
        "version": "0.1.0",
    }


@app.get("/health/ready", tags=["system"])
async def readiness_check() -> JSONResponse:
    """Readiness: 503 while any backing dependency is unavailable."""
    checks = await _run_readiness_checks(app)
    ready = all(check["ok"] for check in checks.values())
    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ok" if ready else "degraded", "checks": checks},
    )


# ── Router registration ────────────────────────────────────────────────────
app.include_router(recipes.router, prefix="/api/v1")
app.include_router(batches.router, prefix="/api/v1")
app.include_router(commands.router, prefix="/api/v1")
