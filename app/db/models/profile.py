"""
Profile Model - signed-in buyer identities and credit balance
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime

from app.db.database import Base


class Profile(Base):
    """``id`` is the auth provider's user id, carried in checkout metadata as ``userId``"""

    __tablename__ = "profiles"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=True, index=True)
    credits = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)
