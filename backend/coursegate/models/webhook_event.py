"""Record of gateway event ids already applied, for redelivery dedupe."""

from sqlalchemy import Column, String

from coursegate.db_base import Base
from coursegate.models.base import UTCDateTime, utcnow


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"

    event_id = Column(String(255), primary_key=True, comment="Gateway-assigned event id")
    source = Column(String(50), nullable=False)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(UTCDateTime(), nullable=False, default=utcnow)
