"""
Event dispatcher.

Takes a verified envelope through the processing states:

    received -> claimed -> routed -> marked processed -> acknowledged
    received -> skipped (duplicate) -> acknowledged

Every outcome here is acknowledged with 200. A handler that still fails
after its retries is logged and its claim released, so the event can be
re-run by a manual redelivery, but the provider is not asked to retry a
partially applied event.
"""
import enum
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ErrorCategory
from app.core.logging import get_logger, log_error
from app.core.retry import DEFAULT_RETRY_POLICY, execute_with_retry
from app.domain.events import (
    ChargeSucceeded,
    CheckoutSessionCompleted,
    EventEnvelope,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    UnhandledEvent,
    WebhookEvent,
    parse_event,
)
from app.domain.services.checkout_service import CheckoutService
from app.domain.services.idempotency_service import ClaimResult, IdempotencyService
from app.domain.services.payment_api import PaymentApiClient
from app.domain.services.payment_intent_service import PaymentIntentService

logger = get_logger(__name__)


class DispatchStatus(str, enum.Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    ERROR = "error"


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    event_type: str
    status: DispatchStatus
    processing_time_ms: int
    error: str | None = None

    def to_response(self, correlation_id: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "received": True,
            "eventType": self.event_type,
            "eventId": self.event_id,
            "correlationId": correlation_id,
            "processingTime": self.processing_time_ms,
            "status": self.status.value,
        }
        if self.error:
            body["error"] = self.error
        return body


class EventDispatcher:
    """Claims, routes and records one provider event"""

    def __init__(self, db: AsyncSession, payment_api: PaymentApiClient):
        self.db = db
        self.ledger = IdempotencyService(db)
        self.checkout = CheckoutService(db, payment_api)
        self.payment_intents = PaymentIntentService(db, payment_api)

    async def dispatch(self, envelope: EventEnvelope) -> DispatchResult:
        start = time.perf_counter()
        context = {"event_id": envelope.id, "event_type": envelope.type, "livemode": envelope.livemode}

        def _result(status: DispatchStatus, error: str | None = None) -> DispatchResult:
            return DispatchResult(
                event_id=envelope.id,
                event_type=envelope.type,
                status=status,
                processing_time_ms=int((time.perf_counter() - start) * 1000),
                error=error,
            )

        logger.info("Webhook event received", extra_data=context)

        claim = await self.ledger.try_claim(envelope.id, envelope.type, envelope.livemode)
        if claim != ClaimResult.ACQUIRED:
            logger.info(
                "Duplicate delivery skipped",
                extra_data={**context, "claim": claim.value},
            )
            return _result(DispatchStatus.ALREADY_PROCESSED)

        try:
            event = parse_event(envelope)
            await execute_with_retry(
                lambda: self._run_handler(event),
                f"handle_{envelope.type}",
                DEFAULT_RETRY_POLICY,
                context,
            )
        except Exception as e:
            await self.db.rollback()
            log_error(
                logger,
                ErrorCategory.WEBHOOK_PROCESSING,
                "Webhook handler failed, acknowledging to stop redelivery",
                e,
                context,
            )
            await self.ledger.release(envelope.id, e)
            return _result(DispatchStatus.ERROR, str(e) or type(e).__name__)

        await self.ledger.mark_processed(envelope.id, envelope.type)

        result = _result(DispatchStatus.PROCESSED)
        logger.info(
            "Webhook event processed",
            extra_data={**context, "processing_time_ms": result.processing_time_ms},
        )
        return result

    async def _run_handler(self, event: WebhookEvent) -> None:
        try:
            await self._route(event)
        except Exception:
            # Leave the session usable for the next attempt
            await self.db.rollback()
            raise

    async def _route(self, event: WebhookEvent) -> None:
        if isinstance(event, CheckoutSessionCompleted):
            await self.checkout.handle(event)
        elif isinstance(event, PaymentIntentSucceeded):
            await self.payment_intents.handle_succeeded(event)
        elif isinstance(event, PaymentIntentFailed):
            await self.payment_intents.handle_failed(event)
        elif isinstance(event, ChargeSucceeded):
            await self.payment_intents.handle_charge_succeeded(event)
        elif isinstance(event, UnhandledEvent):
            logger.info(
                "Unhandled event type",
                extra_data={"event_id": event.envelope.id, "event_type": event.envelope.type},
            )
        else:
            raise TypeError(f"No handler for {type(event).__name__}")
