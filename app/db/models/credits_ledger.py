"""
Credits Ledger Model - one grant per payment intent
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime

from app.db.database import Base


class CreditsLedger(Base):
    """The unique payment intent makes a replayed grant fail on insert"""

    __tablename__ = "credits_ledger"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=False, unique=True)
    stripe_session_id = Column(String(255), nullable=True)

    credits = Column(Integer, nullable=False)
    amount_cents = Column(Integer, nullable=True)
    reason = Column(String(50), nullable=False, default="purchase")

    created_at = Column(DateTime, default=datetime.utcnow)
