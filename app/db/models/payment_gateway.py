"""
Payment Gateway Models - ספקי תשלום ומפתחות gateway לכל tenant
"""
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey

from app.db.database import Base
from app.db.models.tenant import generate_uuid, utcnow


class PaymentProvider(Base):
    __tablename__ = "payment_providers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    key = Column(String(40), unique=True, nullable=False)  # "billplz"
    name = Column(String(100), nullable=True)


class TenantPaymentGatewayKey(Base):
    """מפתחות Billplz של tenant — תומך ברוטציה (כמה שורות פעילות במקביל)"""

    __tablename__ = "tenant_payment_gateway_keys"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    provider_id = Column(String(36), ForeignKey("payment_providers.id"), nullable=False)
    key_version = Column(String(40), nullable=True)
    api_key = Column(String(200), nullable=True)
    collection_id = Column(String(100), nullable=True)
    webhook_secret = Column(String(200), nullable=True)
    api_base = Column(String(300), nullable=True)
    status = Column(String(20), nullable=False, default="active")  # active / rotating / revoked
    is_primary = Column(Boolean, nullable=True, default=False)
    allow_webhook_verification = Column(Boolean, nullable=True, default=True)
    valid_from = Column(DateTime(timezone=True), nullable=True)
    valid_to = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
