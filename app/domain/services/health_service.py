"""
Health checks for the webhook service.

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: database round-trip and payment API configuration
"""
from typing import Any

from sqlalchemy import text

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Sanitised error strings, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_STRIPE_KEY = "error: stripe_key_missing"
_ERROR_WEBHOOK_SECRET = "error: webhook_secret_missing"


async def _check_db() -> str:
    """Run a trivial query against the database."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("Database health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


def _check_payment_api() -> str:
    if not settings.STRIPE_SECRET_KEY:
        return _ERROR_STRIPE_KEY
    return _CHECK_OK


def _check_webhook_secret() -> str:
    if not settings.STRIPE_WEBHOOK_SECRET:
        return _ERROR_WEBHOOK_SECRET
    return _CHECK_OK


async def check_readiness() -> dict[str, Any]:
    """
    Full readiness check.

    Returns the overall status ("healthy" or "degraded") plus one entry per
    dependency: "ok" or "error: ...".
    """
    checks = {
        "db": await _check_db(),
        "payment_api": _check_payment_api(),
        "webhook_secret": _check_webhook_secret(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {"status": overall_status, **checks}
