"""
User Profile Model - order counters keyed by email
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime

from app.db.database import Base


class UserProfile(Base):
    __tablename__ = "user_profiles"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), nullable=False, unique=True)
    display_name = Column(String(255), nullable=True)

    total_orders = Column(Integer, nullable=False, default=0)
    custom_cards_ordered = Column(Integer, nullable=False, default=0)
    last_order_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
