"""
Settlement Webhooks - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base

# Models must be imported before create_all
import app.db.models  # noqa: F401

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "webhooks", "description": "Signed payment provider events."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Turns at-least-once payment provider notifications into exactly-once "
        "inventory, customer ledger and marketplace updates."
    ),
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging, rate limiting)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up. Dependencies are not checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description=(
        "Checks the database and the payment API configuration. "
        "Answers 200 with status=healthy, or 503 with status=degraded and the failing check."
    ),
    responses={
        200: {
            "description": "All dependencies are available",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "db": "ok",
                        "payment_api": "ok",
                        "webhook_secret": "ok",
                    }
                }
            },
        },
        503: {
            "description": "At least one dependency is unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "payment_api": "ok",
                        "webhook_secret": "error: webhook_secret_missing",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    from app.domain.services.health_service import check_readiness

    result = await check_readiness()
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
