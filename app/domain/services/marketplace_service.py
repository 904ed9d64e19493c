"""
Marketplace settlement.

Creates one MarketplaceTransaction per purchased listing line, for single
listing checkouts and for the marketplace lines of a cart. Supply of
limited series listings is decremented by a database trigger on the
transactions table, not here.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ErrorCategory
from app.core.logging import get_logger, log_async_operation, log_error, presence
from app.db.models.marketplace_transaction import (
    MarketplacePaymentStatus,
    MarketplaceTransaction,
    MarketplaceTransactionStatus,
)
from app.db.models.profile import Profile
from app.domain.cart import CartItem, parse_cart_items, parse_legacy_marketplace_items
from app.domain.events import CheckoutSession, LineItem
from app.domain.metadata import get_str, parse_int

logger = get_logger(__name__)


@dataclass(frozen=True)
class MarketplaceLine:
    listing_id: str
    seller_id: str
    unit_price_cents: int
    quantity: int

    @property
    def amount_cents(self) -> int:
        return self.unit_price_cents * self.quantity


def seller_line_description(seller_id: str) -> str:
    return f"Marketplace item from seller {seller_id}"


def match_line_quantity(line_items: list[LineItem], seller_id: str) -> int | None:
    """Quantity of the checkout line whose description names this seller"""
    needle = seller_line_description(seller_id)
    for line in line_items:
        if line.description and needle in line.description and line.quantity:
            return line.quantity
    return None


def marketplace_lines_from_cart(session: CheckoutSession) -> list[MarketplaceLine]:
    """One line per distinct, well-formed marketplace item in the cart"""
    items: list[CartItem] = [item for item in parse_cart_items(session.metadata) if item.is_marketplace]
    if not items:
        items = parse_legacy_marketplace_items(session.metadata)

    lines: list[MarketplaceLine] = []
    seen: set[str] = set()
    for item in items:
        if not item.listing_id or not item.seller_id or item.price_cents <= 0:
            logger.warning(
                "Skipping incomplete marketplace cart item",
                extra_data={
                    "session_id": session.id,
                    "item_index": item.index,
                    "listing_id": item.listing_id,
                    "seller_id": item.seller_id,
                    "price_cents": item.price_cents,
                },
                category=ErrorCategory.WEBHOOK_PROCESSING,
            )
            continue
        if item.listing_id in seen:
            continue
        seen.add(item.listing_id)

        quantity = (
            match_line_quantity(session.line_items, item.seller_id)
            or item.quantity
            or 1
        )
        lines.append(MarketplaceLine(
            listing_id=item.listing_id,
            seller_id=item.seller_id,
            unit_price_cents=item.price_cents,
            quantity=quantity,
        ))
    return lines


class MarketplaceService:
    """Settles marketplace purchases into transaction rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve_buyer(self, session: CheckoutSession) -> str | None:
        """Signed-in user id from metadata, else a profile with the same email, else guest"""
        user_id = get_str(session.metadata, "userId")
        if user_id:
            return user_id

        email = session.email
        if not email:
            logger.info(
                "No user id or email on session, recording guest purchase",
                extra_data={"session_id": session.id},
            )
            return None

        result = await self.db.execute(
            select(Profile.id).where(Profile.email == email).limit(1)
        )
        buyer_id = result.scalar_one_or_none()
        logger.info(
            "Buyer lookup by email",
            extra_data={
                "session_id": session.id,
                "email": presence(email),
                "found": buyer_id is not None,
            },
        )
        return buyer_id

    async def _create_transaction(
        self,
        session: CheckoutSession,
        buyer_id: str | None,
        line: MarketplaceLine,
        extra_metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Insert one row; False when this session already settled the listing"""
        now = datetime.utcnow()
        try:
            async with self.db.begin_nested():
                self.db.add(MarketplaceTransaction(
                    listing_id=line.listing_id,
                    buyer_id=buyer_id,
                    seller_id=line.seller_id,
                    amount_cents=line.amount_cents,
                    currency=settings.MARKETPLACE_CURRENCY,
                    stripe_session_id=session.id,
                    stripe_payment_intent_id=session.payment_intent,
                    status=MarketplaceTransactionStatus.COMPLETED.value,
                    payment_status=MarketplacePaymentStatus.SETTLED.value,
                    transaction_metadata=extra_metadata,
                    created_at=now,
                    credited_at=now,
                ))
        except IntegrityError:
            logger.info(
                "Marketplace transaction already exists for session and listing",
                extra_data={"session_id": session.id, "listing_id": line.listing_id},
            )
            return False

        logger.info(
            "Marketplace transaction created",
            extra_data={
                "session_id": session.id,
                "listing_id": line.listing_id,
                "seller_id": line.seller_id,
                "amount_cents": line.amount_cents,
                "quantity": line.quantity,
            },
        )
        return True

    @log_async_operation("single_marketplace_order")
    async def settle_single(self, session: CheckoutSession) -> int:
        """Returns the number of transactions created (0 or 1)"""
        listing_id = get_str(session.metadata, "listingId")
        seller_id = get_str(session.metadata, "sellerId")
        if not listing_id or not seller_id:
            log_error(
                logger,
                ErrorCategory.WEBHOOK_PROCESSING,
                "Missing marketplace order data",
                ValueError("Missing listingId or sellerId"),
                {"session_id": session.id, "listing_id": listing_id, "seller_id": seller_id},
            )
            return 0

        quantity = max(parse_int(session.metadata.get("quantity"), 1), 1)
        total_cents = parse_int(session.metadata.get("totalPriceCents"), 0)
        buyer_id = await self.resolve_buyer(session)

        # The metadata total already includes quantity
        line = MarketplaceLine(
            listing_id=listing_id,
            seller_id=seller_id,
            unit_price_cents=total_cents,
            quantity=1,
        )
        created = await self._create_transaction(
            session,
            buyer_id,
            line,
            {"quantity": quantity, "single_card_price": total_cents / quantity},
        )
        await self.db.commit()
        return int(created)

    @log_async_operation("marketplace_cart_checkout")
    async def settle_cart(self, session: CheckoutSession) -> int:
        """Returns the number of transactions created"""
        lines = marketplace_lines_from_cart(session)
        if not lines:
            logger.info(
                "No marketplace items found in cart checkout",
                extra_data={"session_id": session.id},
            )
            return 0

        logger.info(
            f"Found {len(lines)} marketplace items in cart",
            extra_data={
                "session_id": session.id,
                "items": [
                    {"listing_id": line.listing_id, "seller_id": line.seller_id, "quantity": line.quantity}
                    for line in lines
                ],
            },
        )

        buyer_id = await self.resolve_buyer(session)
        created = 0
        for line in lines:
            if await self._create_transaction(session, buyer_id, line):
                created += 1
        await self.db.commit()
        return created

    async def mark_payment_succeeded(self, payment_intent_id: str) -> int:
        """Flip every transaction of a payment intent to succeeded"""
        result = await self.db.execute(
            update(MarketplaceTransaction)
            .where(MarketplaceTransaction.stripe_payment_intent_id == payment_intent_id)
            .values(
                status=MarketplaceTransactionStatus.COMPLETED.value,
                payment_status=MarketplacePaymentStatus.SUCCEEDED.value,
            )
        )
        await self.db.commit()
        updated = result.rowcount or 0
        if updated:
            logger.info(
                "Marketplace transactions marked succeeded",
                extra_data={"payment_intent_id": payment_intent_id, "updated": updated},
            )
        else:
            logger.warning(
                "No marketplace transaction found for payment intent",
                extra_data={"payment_intent_id": payment_intent_id},
            )
        return updated
