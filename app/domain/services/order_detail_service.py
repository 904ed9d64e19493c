"""
Order detail snapshot for physical goods checkouts.
"""
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.order_detail import OrderDetail
from app.domain.events import CheckoutSession

logger = get_logger(__name__)

PLACEHOLDER_ADDRESS = {
    "line1": "Address not collected",
    "city": "Unknown",
    "state": "Unknown",
    "postal_code": "00000",
    "country": "US",
}


class OrderDetailService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(self, session: CheckoutSession) -> bool:
        """Write the snapshot once per session. False if it already exists."""
        try:
            async with self.db.begin_nested():
                self.db.add(OrderDetail(
                    stripe_session_id=session.id,
                    stripe_payment_intent_id=session.payment_intent,
                    customer_email=session.email,
                    customer_name=session.customer_details.name,
                    amount_total_cents=session.amount_total,
                    currency=session.currency,
                    shipping_details=session.shipping_address or PLACEHOLDER_ADDRESS,
                    billing_details=session.customer_details.address,
                    product_metadata={
                        "metadata": dict(session.metadata),
                        "line_items": [item.model_dump() for item in session.line_items],
                    },
                ))
        except IntegrityError:
            logger.info("Order details already saved", extra_data={"session_id": session.id})
            return False

        await self.db.commit()
        logger.info("Order details saved", extra_data={"session_id": session.id, "status": "paid"})
        return True
