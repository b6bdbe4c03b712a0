"""
Tenant Models - בתי ספר (tenants) והדומיינים שלהם
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, ForeignKey

from app.db.database import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tenant(Base):
    """בית ספר — יחידת ה-multi-tenancy"""

    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    slug = Column(String(63), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    plan_code = Column(String(20), nullable=False, default="enterprise")
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TenantDomain(Base):
    """דומיין (תת-דומיין או custom) שממופה ל-tenant"""

    __tablename__ = "tenant_domains"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    # מאוחסן מנורמל: אותיות קטנות, ללא port
    domain = Column(String(253), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
