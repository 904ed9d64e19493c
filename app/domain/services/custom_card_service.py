"""
Custom card orders.

Custom cards are made to order, so they never touch limited edition stock.
Each paid card becomes a CustomCardOrder row keyed by the session (single
checkout) or ``<session>_item<N>`` (cart line), and the buyer's
UserProfile counters are bumped.
"""
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger, presence
from app.db.models.custom_card_order import CustomCardOrder
from app.db.models.user_profile import UserProfile
from app.domain.cart import parse_cart_items
from app.domain.events import CheckoutSession
from app.domain.metadata import get_str, is_true, parse_int

logger = get_logger(__name__)

DEFAULT_CARD_FINISH = "matte"


def cart_order_key(session_id: str, item_index: int) -> str:
    return f"{session_id}_item{item_index}"


class CustomCardService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _insert_order(self, order: CustomCardOrder) -> bool:
        try:
            async with self.db.begin_nested():
                self.db.add(order)
        except IntegrityError:
            logger.info(
                "Custom card order already recorded",
                extra_data={"order_key": order.order_key},
            )
            return False
        return True

    async def record_single(self, session: CheckoutSession) -> int:
        """Record a single custom card checkout. Returns cards ordered."""
        metadata = session.metadata
        upload_id = get_str(metadata, "uploadId")
        image_url = get_str(metadata, "customImageUrl")
        quantity = max(parse_int(metadata.get("quantity"), 1), 1)

        if not upload_id and not image_url:
            logger.warning(
                "Custom card order has neither upload id nor image url",
                extra_data={"session_id": session.id},
            )

        created = await self._insert_order(CustomCardOrder(
            order_key=session.id,
            stripe_session_id=session.id,
            user_id=get_str(metadata, "userId"),
            customer_email=session.email,
            upload_id=upload_id,
            image_url=image_url,
            card_finish=get_str(metadata, "cardFinish") or DEFAULT_CARD_FINISH,
            include_display_case="true" if is_true(metadata.get("includeDisplayCase")) else "false",
            quantity=quantity,
            amount_cents=session.amount_total,
        ))
        await self._commit()

        logger.info(
            "Custom card order recorded",
            extra_data={
                "session_id": session.id,
                "upload_id": upload_id,
                "quantity": quantity,
                "created": created,
            },
        )
        if created:
            await self.update_user_profile(session, quantity)
        return quantity if created else 0

    async def record_cart(self, session: CheckoutSession) -> int:
        """Record every custom-card line of a cart. Returns cards ordered."""
        total_cards = 0
        for item in parse_cart_items(session.metadata):
            if not item.is_custom_card:
                continue
            quantity = max(item.quantity, 1)
            created = await self._insert_order(CustomCardOrder(
                order_key=cart_order_key(session.id, item.index),
                stripe_session_id=session.id,
                user_id=get_str(session.metadata, "userId"),
                customer_email=session.email,
                image_url=item.image_url or "",
                card_finish=item.finish or DEFAULT_CARD_FINISH,
                quantity=quantity,
            ))
            if created:
                total_cards += quantity
                logger.info(
                    "Cart custom card line recorded",
                    extra_data={
                        "session_id": session.id,
                        "item_index": item.index,
                        "quantity": quantity,
                        "card_finish": item.finish,
                    },
                )
        await self._commit()

        if total_cards:
            await self.update_user_profile(session, total_cards)
        return total_cards

    async def update_user_profile(self, session: CheckoutSession, card_quantity: int) -> None:
        email = session.email
        if not email:
            logger.warning(
                "No customer email for custom card order, profile not updated",
                extra_data={"session_id": session.id},
            )
            return

        now = datetime.utcnow()
        result = await self.db.execute(select(UserProfile).where(UserProfile.email == email))
        profile = result.scalar_one_or_none()
        if profile is None:
            self.db.add(UserProfile(
                email=email,
                display_name=session.customer_details.name,
                total_orders=1,
                custom_cards_ordered=card_quantity,
                last_order_at=now,
            ))
        else:
            profile.display_name = session.customer_details.name or profile.display_name
            profile.total_orders = (profile.total_orders or 0) + 1
            profile.custom_cards_ordered = (profile.custom_cards_ordered or 0) + card_quantity
            profile.last_order_at = now
        await self._commit()

        logger.info(
            "User profile updated with custom card order",
            extra_data={"session_id": session.id, "email": presence(email), "cards": card_quantity},
        )

    async def _commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
