"""
Payment Event Model - יומן ביקורת append-only לכל webhook / poll שהתקבל.

רשומה אחת לכל אירוע; לא מעדכנים ולא מוחקים.
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Index
from sqlalchemy.types import JSON

from app.db.database import Base
from app.db.models.tenant import generate_uuid, utcnow


class PaymentEvent(Base):
    """אירוע תשלום — webhook, refresh או רישום פנימי"""

    __tablename__ = "payment_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    tenant_id = Column(String(36), nullable=True)
    provider_id = Column(String(36), nullable=True)
    source = Column(String(20), nullable=False)  # "billplz" / "app"
    event_type = Column(String(80), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    provider_event_id = Column(String(200), nullable=True)
    provider_event_fingerprint = Column(String(64), nullable=True)
    received_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_events_tenant_provider_event", "tenant_id", "provider_event_id"),
        Index("ix_payment_events_payment_fingerprint", "payment_id", "provider_event_fingerprint"),
    )
