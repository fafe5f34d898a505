"""
Call QA - FastAPI Backend
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from callqa.config import settings
from callqa.routers import analysis, bulk_analysis, sse

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Sentry error tracking (optional, enabled when SENTRY_DSN is set)
_sentry_dsn = os.getenv("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=_sentry_dsn,
        traces_sample_rate=0.1,
        environment=os.getenv("SENTRY_ENVIRONMENT", settings.environment),
        release="callqa-api@0.1.0",
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
    )
    logger.info("Sentry initialized for API")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting Call QA API (debug=%s, env=%s)", settings.debug, settings.environment)

    from callqa.services.database import init_db, close_db
    try:
        await init_db()
    except Exception as e:
        logger.warning("Database initialization warning: %s", e)

    yield

    logger.info("Shutting down")
    from callqa.services.gemini import gemini_client
    from callqa.services.redis_client import redis_client
    await gemini_client.close()
    await redis_client.close()
    await close_db()


app = FastAPI(
    title="Call QA",
    description="Call-center recording analysis API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request validation errors as 400 with one entry per offending field."""
    details = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    content = {"error": "Internal server error"}
    if not settings.is_production:
        content["message"] = str(exc)
    return JSONResponse(status_code=500, content=content)


app.include_router(analysis.router, prefix="/api/analysis", tags=["Analysis"])
app.include_router(bulk_analysis.router, prefix="/api/bulk-analysis", tags=["Bulk analysis"])
app.include_router(sse.router, prefix="/api/bulk-analysis", tags=["Bulk analysis"])


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "Call QA"}


@app.get("/health")
async def health():
    """Detailed health check: verifies Redis and PostgreSQL connectivity."""
    checks = {"api": True}

    try:
        from callqa.services.redis_client import redis_client
        client = await redis_client.get_client()
        await client.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Health check: redis unavailable (%s)", e)
        checks["redis"] = False

    try:
        from sqlalchemy import text
        from callqa.services.database import get_db
        async with get_db() as db:
            await db.execute(text("SELECT 1"))
        checks["postgres"] = True
    except Exception as e:
        logger.warning("Health check: postgres unavailable (%s)", e)
        checks["postgres"] = False

    status = "healthy" if all(checks.values()) else "degraded"
    return {"status": status, "version": "0.1.0", "services": checks}
