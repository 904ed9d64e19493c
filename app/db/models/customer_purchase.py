"""
Customer Purchase Model - local log of customer record updates
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Boolean

from app.db.database import Base


class CustomerPurchase(Base):
    """One row per checkout folded into a payment API customer record"""

    __tablename__ = "customer_purchases"

    id = Column(Integer, primary_key=True, index=True)
    stripe_customer_id = Column(String(255), nullable=False, index=True)
    stripe_session_id = Column(String(255), nullable=False, index=True)

    amount_cents = Column(Integer, nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=1)
    promotions_consent = Column(Boolean, nullable=False, default=False)
    is_new_customer = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
