"""
Credits purchases.

The ledger row is keyed by payment intent: inserting it is the grant's
idempotency gate. Only a successful insert increments the profile balance.
"""
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.credits_ledger import CreditsLedger
from app.db.models.profile import Profile
from app.domain.events import CheckoutSession
from app.domain.metadata import get_str, parse_int

logger = get_logger(__name__)

CREDITS_PURCHASE_KIND = "credits_purchase"


def is_credits_purchase(session: CheckoutSession) -> bool:
    return session.metadata.get("kind") == CREDITS_PURCHASE_KIND


class CreditsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def grant(self, session: CheckoutSession) -> int:
        """Returns the credits granted, 0 when nothing was (or had to be) granted"""
        user_id = get_str(session.metadata, "userId")
        credits = parse_int(session.metadata.get("credits"), 0)
        payment_intent_id = session.payment_intent or session.id

        if not user_id or credits <= 0:
            logger.warning(
                "Credits purchase without user or credit amount, skipping",
                extra_data={"session_id": session.id, "has_user": bool(user_id), "credits": credits},
            )
            return 0

        try:
            async with self.db.begin_nested():
                self.db.add(CreditsLedger(
                    user_id=user_id,
                    stripe_payment_intent_id=payment_intent_id,
                    stripe_session_id=session.id,
                    credits=credits,
                    amount_cents=session.amount_total or 0,
                    reason="purchase",
                ))
        except IntegrityError:
            await self.db.commit()
            logger.info(
                "Credits already granted for payment intent, skipping",
                extra_data={"payment_intent_id": payment_intent_id},
            )
            return 0

        result = await self.db.execute(select(Profile).where(Profile.id == user_id))
        profile = result.scalar_one_or_none()
        if profile is None:
            profile = Profile(id=user_id, email=session.email, credits=credits)
            self.db.add(profile)
        else:
            profile.credits = (profile.credits or 0) + credits
        # Ledger row and balance land together
        await self.db.commit()

        logger.info(
            "Credits granted",
            extra_data={
                "user_id": user_id,
                "credits": credits,
                "payment_intent_id": payment_intent_id,
                "new_balance": profile.credits,
            },
        )
        return credits
