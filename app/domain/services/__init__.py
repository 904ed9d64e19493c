"""
Domain Services
"""
from app.domain.services.payment_api import PaymentApiClient
from app.domain.services.idempotency_service import IdempotencyService
from app.domain.services.inventory_service import InventoryService
from app.domain.services.customer_ledger_service import CustomerLedgerService
from app.domain.services.marketplace_service import MarketplaceService
from app.domain.services.custom_card_service import CustomCardService
from app.domain.services.credits_service import CreditsService
from app.domain.services.order_detail_service import OrderDetailService
from app.domain.services.checkout_service import CheckoutService
from app.domain.services.payment_intent_service import PaymentIntentService
from app.domain.services.event_dispatcher import EventDispatcher

__all__ = [
    "PaymentApiClient",
    "IdempotencyService",
    "InventoryService",
    "CustomerLedgerService",
    "MarketplaceService",
    "CustomCardService",
    "CreditsService",
    "OrderDetailService",
    "CheckoutService",
    "PaymentIntentService",
    "EventDispatcher",
]
