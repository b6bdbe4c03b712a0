"""
Online Slot Claim Model - תפיסת מקום בשיעור אונליין עד לאישור תשלום
"""
from sqlalchemy import Column, String, DateTime, ForeignKey

from app.db.database import Base
from app.db.models.tenant import generate_uuid, utcnow


class OnlineSlotClaim(Base):
    __tablename__ = "online_slot_claims"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    parent_id = Column(String(36), nullable=False, index=True)
    student_id = Column(String(36), nullable=True)
    # pending_payment / active / expired / cancelled
    status = Column(String(20), nullable=False, default="pending_payment")
    seat_hold_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
