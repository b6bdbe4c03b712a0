"""
Billplz Payment Gateway

חתימות webhook, client ל-API ומפתחות gateway לכל tenant.
"""
from app.domain.services.billplz.client import BillplzClient, CreateBillInput
from app.domain.services.billplz.gateway_config import (
    BillplzRuntimeConfig,
    resolve_billplz_config_for_tenant,
)
from app.domain.services.billplz.signature import (
    is_allowed_billplz_collection,
    normalize_billplz_payload,
    verify_billplz_signature,
)

__all__ = [
    "BillplzClient",
    "CreateBillInput",
    "BillplzRuntimeConfig",
    "resolve_billplz_config_for_tenant",
    "is_allowed_billplz_collection",
    "normalize_billplz_payload",
    "verify_billplz_signature",
]
