"""
Domain Services
"""
from app.domain.services.payments_service import PaymentsService
from app.domain.services.move_online import MoveOnlineService
from app.domain.services.online_claims import OnlineClaimsService
from app.domain.services.tenant_service import TenantService

__all__ = [
    "PaymentsService",
    "MoveOnlineService",
    "OnlineClaimsService",
    "TenantService",
]
