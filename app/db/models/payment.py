"""
Payment Models - רשומות תשלום ושורות חיוב
"""
import enum

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.types import JSON

from app.db.database import Base
from app.db.models.tenant import generate_uuid, utcnow


class PaymentStatus(str, enum.Enum):
    DRAFT = "draft"
    INITIATED = "initiated"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


TERMINAL_SUCCESS_STATUSES = frozenset({PaymentStatus.PAID, PaymentStatus.REFUNDED})
TERMINAL_FAILURE_STATUSES = frozenset({PaymentStatus.FAILED, PaymentStatus.EXPIRED})


class Payment(Base):
    """תשלום של הורה — הסטטוס משתנה רק דרך שירות ה-reconciliation"""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=True, index=True)
    parent_id = Column(String(36), nullable=False, index=True)
    provider_id = Column(String(36), ForeignKey("payment_providers.id"), nullable=True)

    status = Column(
        SQLEnum(
            PaymentStatus,
            name="payment_status",
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=False,
        default=PaymentStatus.INITIATED,
        index=True,
    )
    total_amount_cents = Column(Integer, nullable=False, default=0)
    merchant_fee_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="MYR")
    payable_months = Column(JSON, nullable=True)

    billplz_id = Column(String(64), unique=True, nullable=True)
    redirect_url = Column(String(1000), nullable=True)

    # מפתח idempotency ייחודי ל-tenant — התנגשות = תשלום אחר עם אותו מפתח
    idempotency_key = Column(String(120), nullable=True)
    checkout_fingerprint = Column(String(64), nullable=True)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    line_items = relationship(
        "PaymentLineItem",
        back_populates="payment",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_payments_tenant_idempotency_key"),
    )


class PaymentLineItem(Base):
    """שורת חיוב — ילד × פריט עמלה × חודשים"""

    __tablename__ = "payment_line_items"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    child_id = Column(String(36), nullable=True)
    fee_id = Column(String(36), nullable=True)
    label = Column(String(300), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_amount_cents = Column(Integer, nullable=False, default=0)
    subtotal_cents = Column(Integer, nullable=False, default=0)
    metadata_ = Column("metadata", JSON, nullable=True)

    payment = relationship("Payment", back_populates="line_items")
