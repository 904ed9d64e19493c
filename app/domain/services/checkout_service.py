"""
checkout.session.completed handling.

``plan_checkout`` decides from the session metadata alone which side
effects a checkout needs; ``CheckoutService`` carries them out. Inventory,
marketplace settlement, credits and the customer ledger must succeed (they
raise after their retries run out). Custom card rows, user profile and the
order snapshot are best-effort and only logged on failure.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ErrorCategory
from app.core.logging import get_logger, log_async_operation, presence
from app.core.retry import NonCriticalResult, attempt_non_critical
from app.domain.cart import parse_cart_items
from app.domain.events import CheckoutSession, CheckoutSessionCompleted
from app.domain.metadata import get_str, is_true, parse_int
from app.domain.services.consent_service import (
    extract_consent,
    log_consent_decision,
    log_validation_outcome,
)
from app.domain.services.credits_service import CreditsService, is_credits_purchase
from app.domain.services.custom_card_service import CustomCardService
from app.domain.services.customer_ledger_service import CustomerLedgerResult, CustomerLedgerService
from app.domain.services.inventory_service import InventoryService, InventoryUpdateResult
from app.domain.services.marketplace_service import MarketplaceService
from app.domain.services.order_detail_service import OrderDetailService
from app.domain.services.payment_api import PaymentApiClient

logger = get_logger(__name__)


@dataclass(frozen=True)
class CheckoutPlan:
    is_cart: bool
    is_single_custom_card: bool
    is_single_marketplace: bool
    is_credits: bool
    inventory_quantity: int
    has_custom_cards_in_cart: bool
    has_marketplace_in_cart: bool
    is_physical_order: bool


def plan_checkout(session: CheckoutSession) -> CheckoutPlan:
    metadata = session.metadata
    is_cart = is_true(metadata.get("isCartCheckout"))
    is_credits = is_credits_purchase(session) or is_true(metadata.get("isCreditPurchase"))
    is_marketplace = is_true(metadata.get("isMarketplace"))
    is_custom = (
        is_true(metadata.get("isCustomCard"))
        or get_str(metadata, "uploadId") is not None
        or get_str(metadata, "customImageUrl") is not None
    )

    if is_cart:
        items = parse_cart_items(metadata)
        has_custom = any(item.is_custom_card for item in items)
        has_marketplace = any(item.is_marketplace for item in items) or (
            "marketplace_item_0_listing_id" in metadata
        )
        # Only limited edition lines consume stock
        inventory_quantity = sum(item.quantity for item in items if item.is_limited_edition)
        return CheckoutPlan(
            is_cart=True,
            is_single_custom_card=False,
            is_single_marketplace=False,
            is_credits=is_credits,
            inventory_quantity=max(inventory_quantity, 0),
            has_custom_cards_in_cart=has_custom,
            has_marketplace_in_cart=has_marketplace,
            is_physical_order=not is_credits and (has_custom or inventory_quantity > 0),
        )

    single_limited = not (is_custom or is_marketplace or is_credits)
    return CheckoutPlan(
        is_cart=False,
        is_single_custom_card=is_custom and not is_marketplace and not is_credits,
        is_single_marketplace=is_marketplace,
        is_credits=is_credits,
        inventory_quantity=max(parse_int(metadata.get("quantity"), 1), 0) if single_limited else 0,
        has_custom_cards_in_cart=False,
        has_marketplace_in_cart=False,
        is_physical_order=not is_marketplace and not is_credits,
    )


@dataclass
class CheckoutOutcome:
    plan: CheckoutPlan
    inventory: InventoryUpdateResult | None = None
    marketplace_transactions: int = 0
    credits_granted: int = 0
    custom_cards: int = 0
    customer: CustomerLedgerResult | None = None
    order_details_saved: bool = False


class CheckoutService:
    def __init__(self, db: AsyncSession, payment_api: PaymentApiClient):
        self.db = db
        self.payment_api = payment_api
        self.inventory = InventoryService(payment_api)
        self.marketplace = MarketplaceService(db)
        self.customers = CustomerLedgerService(db, payment_api)
        self.custom_cards = CustomCardService(db)
        self.credits = CreditsService(db)
        self.order_details = OrderDetailService(db)

    async def _best_effort(
        self,
        name: str,
        operation: Callable[[], Awaitable[Any]],
        context: dict[str, Any],
    ) -> NonCriticalResult:
        result = await attempt_non_critical(name, operation, ErrorCategory.DATABASE, context)
        if not result.ok:
            await self.db.rollback()
        return result

    @log_async_operation("checkout_session_completed")
    async def handle(self, event: CheckoutSessionCompleted) -> CheckoutOutcome:
        session = event.session
        plan = plan_checkout(session)
        outcome = CheckoutOutcome(plan=plan)
        context = {"session_id": session.id, "event_id": event.envelope.id}

        logger.info(
            "Processing completed checkout session",
            extra_data={
                **context,
                "amount": session.amount_total,
                "currency": session.currency,
                "payment_status": session.payment_status,
                "customer_email": presence(session.email),
                "plan": {
                    "is_cart": plan.is_cart,
                    "is_single_custom_card": plan.is_single_custom_card,
                    "is_single_marketplace": plan.is_single_marketplace,
                    "is_credits": plan.is_credits,
                    "inventory_quantity": plan.inventory_quantity,
                },
            },
        )

        consent_result = extract_consent(session)
        log_validation_outcome(consent_result)
        log_consent_decision(
            consent_result.consent,
            context={"amount": session.amount_total, "currency": session.currency},
        )

        if plan.is_credits:
            outcome.credits_granted = await self.credits.grant(session)

        if plan.inventory_quantity > 0:
            outcome.inventory = await self.inventory.decrement(plan.inventory_quantity, session.id)
        else:
            logger.info(
                "No limited edition stock consumed by this checkout",
                extra_data=context,
            )

        if plan.is_single_custom_card:
            result = await self._best_effort(
                "custom_card_order", lambda: self.custom_cards.record_single(session), context
            )
            outcome.custom_cards = result.value or 0
        elif plan.has_custom_cards_in_cart:
            result = await self._best_effort(
                "custom_card_cart_orders", lambda: self.custom_cards.record_cart(session), context
            )
            outcome.custom_cards = result.value or 0

        if plan.is_cart and plan.has_marketplace_in_cart:
            outcome.marketplace_transactions = await self.marketplace.settle_cart(session)
        elif plan.is_single_marketplace:
            outcome.marketplace_transactions = await self.marketplace.settle_single(session)

        outcome.customer = await self.customers.store(session, consent_result)

        if plan.is_physical_order:
            result = await self._best_effort(
                "order_details", lambda: self.order_details.save(session), context
            )
            outcome.order_details_saved = bool(result.value)

        logger.info(
            "Checkout session processed successfully",
            extra_data={
                **context,
                "inventory_updated": outcome.inventory is not None,
                "marketplace_transactions": outcome.marketplace_transactions,
                "credits_granted": outcome.credits_granted,
                "custom_cards": outcome.custom_cards,
            },
        )
        return outcome
