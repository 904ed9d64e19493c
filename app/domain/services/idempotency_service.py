"""
Idempotency ledger for payment provider events.

Each delivery claims its event id by inserting a ``processing`` row inside a
savepoint. The primary key turns two concurrent deliveries of the same event
into one winner and one IntegrityError, so the check and the claim are a
single atomic step. The row is flipped to ``completed`` once the handler
finished, or to ``failed`` so a later redelivery may run it again.
"""
import enum
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ErrorCategory
from app.core.logging import get_logger, log_error
from app.core.retry import IDEMPOTENCY_RETRY_POLICY, execute_with_retry
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus

logger = get_logger(__name__)


class ClaimResult(str, enum.Enum):
    ACQUIRED = "acquired"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"


class IdempotencyService:
    """Durable record of which event ids have been fully processed"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def try_claim(
        self,
        event_id: str,
        event_type: str,
        livemode: bool = False,
    ) -> ClaimResult:
        """
        Claim ``event_id`` for processing.

        A database failure fails open: the event is processed rather than
        silently dropped.
        """
        try:
            return await self._claim(event_id, event_type, livemode)
        except SQLAlchemyError as e:
            await self.db.rollback()
            log_error(
                logger,
                ErrorCategory.DATABASE,
                "Idempotency claim failed, processing event anyway",
                e,
                {"event_id": event_id, "event_type": event_type, "fail_open": True},
            )
            return ClaimResult.ACQUIRED

    async def _claim(self, event_id: str, event_type: str, livemode: bool) -> ClaimResult:
        now = datetime.utcnow()
        try:
            async with self.db.begin_nested():
                self.db.add(WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    livemode=livemode,
                    status=WebhookEventStatus.PROCESSING.value,
                    claimed_at=now,
                ))
            # Commit now so the claim survives a handler failure
            await self.db.commit()
            return ClaimResult.ACQUIRED
        except IntegrityError:
            pass

        result = await self.db.execute(
            select(WebhookEvent.status, WebhookEvent.claimed_at)
            .where(WebhookEvent.event_id == event_id)
        )
        row = result.one_or_none()
        if not row:
            await self.db.rollback()
            return ClaimResult.IN_PROGRESS

        if row.status == WebhookEventStatus.COMPLETED.value:
            await self.db.rollback()
            logger.info(
                "Skipping already processed event",
                extra_data={"event_id": event_id, "event_type": event_type},
            )
            return ClaimResult.ALREADY_PROCESSED

        # Take over a failed claim, or a processing claim nobody finished
        threshold = now - timedelta(seconds=settings.IDEMPOTENCY_STALE_SECONDS)
        update_result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.event_id == event_id,
                (
                    (WebhookEvent.status == WebhookEventStatus.FAILED.value)
                    | (
                        (WebhookEvent.status == WebhookEventStatus.PROCESSING.value)
                        & (WebhookEvent.claimed_at < threshold)
                    )
                ),
            )
            .values(
                status=WebhookEventStatus.PROCESSING.value,
                claimed_at=now,
                last_error=None,
            )
        )

        if update_result.rowcount > 0:
            await self.db.commit()
            logger.warning(
                "Re-claiming failed or stale event",
                extra_data={"event_id": event_id, "previous_status": row.status},
            )
            return ClaimResult.ACQUIRED

        # End the transaction so the winning delivery can take the write lock
        await self.db.rollback()
        logger.info(
            "Skipping event already being processed",
            extra_data={"event_id": event_id, "event_type": event_type},
        )
        return ClaimResult.IN_PROGRESS

    async def is_processed(self, event_id: str) -> bool:
        """Lookup only. Fails open: an unreadable ledger reports "not processed".

        Event handling goes through ``try_claim``, which checks and claims in
        one step. This read-only check serves operator tooling and callers
        that need the answer without taking a claim.
        """
        async def _lookup() -> bool:
            result = await self.db.execute(
                select(WebhookEvent.status).where(WebhookEvent.event_id == event_id)
            )
            return result.scalar_one_or_none() == WebhookEventStatus.COMPLETED.value

        try:
            return await execute_with_retry(
                _lookup,
                "idempotency_check",
                IDEMPOTENCY_RETRY_POLICY,
                {"event_id": event_id},
            )
        except SQLAlchemyError as e:
            log_error(
                logger,
                ErrorCategory.DATABASE,
                "Idempotency check failed, assuming event is new",
                e,
                {"event_id": event_id, "fail_open": True},
            )
            return False

    async def mark_processed(self, event_id: str, event_type: str) -> None:
        """Record completion. Failures are logged, never raised."""
        now = datetime.utcnow()
        try:
            result = await self.db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(
                    status=WebhookEventStatus.COMPLETED.value,
                    processed_at=now,
                    last_error=None,
                )
            )
            if result.rowcount == 0:
                self.db.add(WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    status=WebhookEventStatus.COMPLETED.value,
                    claimed_at=now,
                    processed_at=now,
                ))
            await self.db.commit()
            logger.info(
                "Event marked as processed",
                extra_data={"event_id": event_id, "event_type": event_type},
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            log_error(
                logger,
                ErrorCategory.DATABASE,
                "Failed to mark event as processed",
                e,
                {"event_id": event_id, "event_type": event_type},
            )

    async def release(self, event_id: str, error: BaseException | str) -> None:
        """Mark a claim failed so a redelivery can run the handler again"""
        try:
            await self.db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(
                    status=WebhookEventStatus.FAILED.value,
                    last_error=str(error)[:1000],
                )
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            log_error(
                logger,
                ErrorCategory.DATABASE,
                "Failed to release event claim",
                e,
                {"event_id": event_id},
            )
