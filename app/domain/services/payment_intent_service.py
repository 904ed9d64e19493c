"""
Payment intent and charge events.
"""
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ErrorCategory
from app.core.logging import get_logger
from app.core.retry import DEFAULT_RETRY_POLICY, execute_with_retry
from app.domain.events import ChargeSucceeded, PaymentIntentFailed, PaymentIntentSucceeded
from app.domain.services.marketplace_service import MarketplaceService
from app.domain.services.payment_api import PaymentApiClient

logger = get_logger(__name__)


class PaymentIntentService:
    def __init__(self, db: AsyncSession, payment_api: PaymentApiClient):
        self.payment_api = payment_api
        self.marketplace = MarketplaceService(db)

    async def handle_succeeded(self, event: PaymentIntentSucceeded) -> int:
        logger.info(
            "Processing payment_intent.succeeded",
            extra_data={"payment_intent_id": event.payment_intent_id, "amount": event.amount},
        )
        return await self.marketplace.mark_payment_succeeded(event.payment_intent_id)

    async def handle_failed(self, event: PaymentIntentFailed) -> None:
        logger.warning(
            "Payment failed",
            extra_data={
                "payment_intent_id": event.payment_intent_id,
                "failure_code": event.failure_code,
                "failure_message": event.failure_message,
            },
            category=ErrorCategory.WEBHOOK_PROCESSING,
        )

    async def handle_charge_succeeded(self, event: ChargeSucceeded) -> int:
        """Fallback for endpoints subscribed to charges only"""
        if not event.payment_intent_id:
            logger.info(
                "Charge has no payment intent, nothing to settle",
                extra_data={"charge_id": event.charge_id},
            )
            return 0

        intent = await execute_with_retry(
            lambda: self.payment_api.retrieve_payment_intent(event.payment_intent_id),
            "retrieve_payment_intent",
            DEFAULT_RETRY_POLICY,
            {"charge_id": event.charge_id, "payment_intent_id": event.payment_intent_id},
        )
        return await self.handle_succeeded(PaymentIntentSucceeded(
            envelope=event.envelope,
            payment_intent_id=intent.get("id") or event.payment_intent_id,
            amount=intent.get("amount"),
            metadata=intent.get("metadata") or {},
        ))
