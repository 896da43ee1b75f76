import enum
from sqlalchemy import Column, Integer, String, Text, DateTime, Enum, JSON
from sqlalchemy.sql import func

from .base import Base


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class WebhookEvent(Base):
    """Append-only log of verified PayPal webhook deliveries"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider_event_id = Column(String(255), unique=True, nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(Enum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.RECEIVED)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
