"""
Database Models
"""
from app.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from app.db.models.marketplace_transaction import (
    MarketplaceTransaction,
    MarketplaceTransactionStatus,
    MarketplacePaymentStatus,
)
from app.db.models.order_detail import OrderDetail
from app.db.models.customer_purchase import CustomerPurchase
from app.db.models.custom_card_order import CustomCardOrder
from app.db.models.user_profile import UserProfile
from app.db.models.profile import Profile
from app.db.models.credits_ledger import CreditsLedger

__all__ = [
    "WebhookEvent",
    "WebhookEventStatus",
    "MarketplaceTransaction",
    "MarketplaceTransactionStatus",
    "MarketplacePaymentStatus",
    "OrderDetail",
    "CustomerPurchase",
    "CustomCardOrder",
    "UserProfile",
    "Profile",
    "CreditsLedger",
]
