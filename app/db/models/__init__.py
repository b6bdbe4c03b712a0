"""
Database Models
"""
from app.db.models.tenant import Tenant, TenantDomain
from app.db.models.payment import Payment, PaymentLineItem, PaymentStatus
from app.db.models.payment_event import PaymentEvent
from app.db.models.payment_gateway import PaymentProvider, TenantPaymentGatewayKey
from app.db.models.student import Student, StudentProgramMigrationStaging
from app.db.models.online_claim import OnlineSlotClaim

__all__ = [
    "Tenant",
    "TenantDomain",
    "Payment",
    "PaymentLineItem",
    "PaymentStatus",
    "PaymentEvent",
    "PaymentProvider",
    "TenantPaymentGatewayKey",
    "Student",
    "StudentProgramMigrationStaging",
    "OnlineSlotClaim",
]
