"""
Custom Card Order Model - a paid order for a user-designed card
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, Text

from app.db.database import Base


class CustomCardOrder(Base):
    """``order_key`` is the session id, or ``<session>_item<N>`` for cart lines"""

    __tablename__ = "custom_card_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_key = Column(String(300), nullable=False, unique=True)
    stripe_session_id = Column(String(255), nullable=False, index=True)

    user_id = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True)

    upload_id = Column(String(255), nullable=True)
    image_url = Column(Text, nullable=True)
    card_finish = Column(String(50), nullable=True)
    include_display_case = Column(String(10), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    amount_cents = Column(Integer, nullable=True)

    status = Column(String(20), nullable=False, default="paid")
    created_at = Column(DateTime, default=datetime.utcnow)
