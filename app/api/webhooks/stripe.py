"""
Stripe webhook endpoint.

Only a request that cannot be verified is answered with a non-2xx status:
missing or invalid signature and unreadable bodies get 400, a missing
webhook secret gets 500. Every verified event is acknowledged with 200,
whatever happened while handling it.
"""
import json
import time

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import ClientDisconnect

from app.core.config import settings
from app.core.exceptions import (
    ErrorCategory,
    ErrorCode,
    ValidationException,
    WebhookRejectedError,
)
from app.core.logging import get_correlation_id, get_logger, log_critical, log_error
from app.db.database import get_db
from app.domain.events import EventEnvelope, parse_envelope
from app.domain.services.event_dispatcher import EventDispatcher
from app.domain.services.payment_api import PaymentApiClient, get_payment_api

logger = get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "stripe-signature"


async def _read_payload(request: Request) -> str:
    try:
        body = await request.body()
        return body.decode("utf-8")
    except (ClientDisconnect, UnicodeDecodeError) as e:
        raise WebhookRejectedError(
            "Failed to read request body",
            ErrorCode.BODY_PARSE_FAILED,
            category=ErrorCategory.EVENT_PARSING,
            details={"reason": type(e).__name__},
        ) from e


def verify_event(payload: str, signature: str | None) -> EventEnvelope:
    """Check the signature header and parse the envelope it covers."""
    if not signature:
        raise WebhookRejectedError(
            "Missing stripe-signature header",
            ErrorCode.MISSING_SIGNATURE,
        )

    secret = settings.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise WebhookRejectedError(
            "Webhook secret not configured",
            ErrorCode.WEBHOOK_SECRET_MISSING,
            status_code=500,
        )

    try:
        stripe.WebhookSignature.verify_header(
            payload,
            signature,
            secret,
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except stripe.SignatureVerificationError as e:
        raise WebhookRejectedError(
            "Webhook signature verification failed",
            ErrorCode.SIGNATURE_VERIFICATION_FAILED,
            details={"reason": str(e)},
        ) from e

    try:
        raw = json.loads(payload)
    except ValueError as e:
        raise WebhookRejectedError(
            "Webhook payload is not valid JSON",
            ErrorCode.EVENT_PARSE_FAILED,
            category=ErrorCategory.EVENT_PARSING,
        ) from e
    if not isinstance(raw, dict):
        raise WebhookRejectedError(
            "Webhook payload is not an event object",
            ErrorCode.EVENT_PARSE_FAILED,
            category=ErrorCategory.EVENT_PARSING,
        )

    try:
        return parse_envelope(raw)
    except ValidationException as e:
        raise WebhookRejectedError(
            e.message,
            ErrorCode.EVENT_PARSE_FAILED,
            category=ErrorCategory.EVENT_PARSING,
            details=e.details,
        ) from e


@router.post(
    "/stripe",
    summary="Stripe webhook",
    description="Receives signed payment events and settles them exactly once.",
)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payment_api: PaymentApiClient = Depends(get_payment_api),
) -> JSONResponse:
    start = time.perf_counter()
    correlation_id = get_correlation_id()

    try:
        payload = await _read_payload(request)
        envelope = verify_event(payload, request.headers.get(SIGNATURE_HEADER))
    except WebhookRejectedError as e:
        context = {"code": e.error_code.value, **e.details}
        if e.error_code == ErrorCode.WEBHOOK_SECRET_MISSING:
            log_critical(logger, e.category, e.message, e, context)
        else:
            log_error(logger, e.category, e.message, e, context)
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_response(correlation_id, int((time.perf_counter() - start) * 1000)),
        )

    logger.info(
        "Webhook signature verified",
        extra_data={"event_id": envelope.id, "event_type": envelope.type},
    )

    result = await EventDispatcher(db, payment_api).dispatch(envelope)
    return JSONResponse(status_code=200, content=result.to_response(correlation_id))


@router.api_route(
    "/stripe",
    methods=["GET", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
async def stripe_webhook_method_not_allowed(request: Request) -> JSONResponse:
    logger.warning(
        "Method not allowed on webhook endpoint",
        extra_data={"method": request.method},
    )
    return JSONResponse(
        status_code=405,
        content={"error": "Method not allowed", "code": ErrorCode.METHOD_NOT_ALLOWED.value},
        headers={"Allow": "POST"},
    )
