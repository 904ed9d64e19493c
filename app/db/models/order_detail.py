"""
Order Detail Model - denormalised snapshot of a completed physical checkout
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, JSON

from app.db.database import Base


class OrderDetail(Base):
    """Shipping, billing and product snapshot written once per session"""

    __tablename__ = "order_details"

    id = Column(Integer, primary_key=True, index=True)
    stripe_session_id = Column(String(255), nullable=False, unique=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)

    customer_email = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)

    amount_total_cents = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=True)

    shipping_details = Column(JSON, nullable=True)
    billing_details = Column(JSON, nullable=True)
    product_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
