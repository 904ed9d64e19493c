"""
Marketplace Transaction Model - one row per purchased listing line.

Quantity is folded into ``amount_cents`` (unit price x quantity). The
(session, listing) pair is unique so a replayed checkout cannot create a
second row for the same line.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint

from app.db.database import Base


class MarketplaceTransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class MarketplacePaymentStatus(str, enum.Enum):
    SETTLED = "settled"
    SUCCEEDED = "succeeded"


class MarketplaceTransaction(Base):
    """A settled marketplace sale"""

    __tablename__ = "marketplace_transactions"

    id = Column(Integer, primary_key=True, index=True)

    listing_id = Column(String(255), nullable=False, index=True)
    buyer_id = Column(String(255), nullable=True)  # None for guest checkout
    seller_id = Column(String(255), nullable=False, index=True)

    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    stripe_session_id = Column(String(255), nullable=False)
    stripe_payment_intent_id = Column(String(255), nullable=True, index=True)

    status = Column(String(20), nullable=False, default=MarketplaceTransactionStatus.COMPLETED.value)
    payment_status = Column(String(20), nullable=False, default=MarketplacePaymentStatus.SETTLED.value)

    transaction_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    credited_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("stripe_session_id", "listing_id", name="uq_marketplace_session_listing"),
    )
