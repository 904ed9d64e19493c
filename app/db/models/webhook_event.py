"""
Webhook Event Model - idempotency ledger for payment provider deliveries.

Every delivery claims its event id by inserting a ``processing`` row; the
primary key is the atomic gate against concurrent duplicates. Only
``completed`` rows block redelivery. ``failed`` rows, and ``processing``
rows left behind by a crashed worker, can be claimed again.
"""
import enum
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Boolean, Index

from app.db.database import Base


class WebhookEventStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEvent(Base):
    """One row per provider event id"""

    __tablename__ = "webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(100), nullable=False)
    livemode = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.PROCESSING.value)

    claimed_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_status_claimed", "status", "claimed_at"),
    )
