"""
Billplz Gateway Configuration — מפתחות לכל tenant עם fallback ל-env

שורות tenant_payment_gateway_keys בסטטוס active/rotating ובתוך חלון
התוקף שלהן; הראשית קודם, אחריה לפי updated_at יורד. כשהטבלאות לא קיימות
(סביבה שלא עברה מיגרציה) או שאין שורה שמישה — ההגדרות מה-env.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import GatewayNotConfiguredError
from app.core.logging import get_logger
from app.db.errors import is_missing_relation_error
from app.db.models.payment_gateway import PaymentProvider, TenantPaymentGatewayKey

logger = get_logger(__name__)

BILLPLZ_PROVIDER_KEY = "billplz"
ACTIVE_KEY_STATUSES = ("active", "rotating")


@dataclass
class BillplzRuntimeConfig:
    provider_id: str | None
    key_version: str | None
    api_base: str
    api_keys: list[str]
    primary_collection_id: str
    allowed_collection_ids: list[str]
    webhook_secrets: list[str] = field(default_factory=list)
    source: str = "env"  # "tenant" / "env"

    @property
    def primary_api_key(self) -> str:
        return self.api_keys[0]


def _unique(values: Sequence[str | None]) -> list[str]:
    seen: list[str] = []
    for value in values:
        cleaned = (value or "").strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_key_row_active(row: TenantPaymentGatewayKey, now: datetime) -> bool:
    valid_from = _aware(row.valid_from)
    valid_to = _aware(row.valid_to)
    if valid_from is not None and valid_from > now:
        return False
    if valid_to is not None and valid_to < now:
        return False
    return True


def env_fallback_config() -> BillplzRuntimeConfig:
    if not settings.BILLPLZ_API_KEY:
        raise GatewayNotConfiguredError("BILLPLZ_API_KEY")
    if not settings.BILLPLZ_COLLECTION_ID:
        raise GatewayNotConfiguredError("BILLPLZ_COLLECTION_ID")
    if not settings.BILLPLZ_X_SIGNATURE:
        raise GatewayNotConfiguredError("BILLPLZ_X_SIGNATURE")

    return BillplzRuntimeConfig(
        provider_id=None,
        key_version=None,
        api_base=settings.BILLPLZ_API_BASE,
        api_keys=[settings.BILLPLZ_API_KEY],
        primary_collection_id=settings.BILLPLZ_COLLECTION_ID,
        allowed_collection_ids=[settings.BILLPLZ_COLLECTION_ID],
        webhook_secrets=[settings.BILLPLZ_X_SIGNATURE],
        source="env",
    )


def tenant_config_from_rows(rows: Sequence[TenantPaymentGatewayKey]) -> BillplzRuntimeConfig | None:
    if not rows:
        return None

    epoch = datetime.min.replace(tzinfo=timezone.utc)
    ordered = sorted(
        rows,
        key=lambda row: (not bool(row.is_primary), -(_aware(row.updated_at) or epoch).timestamp()),
    )
    primary = ordered[0]

    api_keys = _unique([row.api_key for row in ordered])
    webhook_secrets = _unique([
        row.webhook_secret for row in ordered if row.allow_webhook_verification is not False
    ])
    allowed_collection_ids = _unique([row.collection_id for row in ordered])
    primary_collection_id = (primary.collection_id or "").strip()

    if not (api_keys and webhook_secrets and allowed_collection_ids and primary_collection_id):
        return None

    return BillplzRuntimeConfig(
        provider_id=primary.provider_id,
        key_version=primary.key_version,
        api_base=(primary.api_base or "").strip().rstrip("/") or settings.BILLPLZ_API_BASE,
        api_keys=api_keys,
        primary_collection_id=primary_collection_id,
        allowed_collection_ids=allowed_collection_ids,
        webhook_secrets=webhook_secrets,
        source="tenant",
    )


async def resolve_billplz_provider_id(db: AsyncSession) -> str | None:
    try:
        result = await db.execute(
            select(PaymentProvider.id).where(PaymentProvider.key == BILLPLZ_PROVIDER_KEY).limit(1)
        )
    except DBAPIError as e:
        if is_missing_relation_error(e, "payment_providers"):
            await db.rollback()
            return None
        raise
    return result.scalar_one_or_none()


async def resolve_billplz_config_for_tenant(db: AsyncSession, tenant_id: str) -> BillplzRuntimeConfig:
    provider_id = await resolve_billplz_provider_id(db)
    if not provider_id:
        return env_fallback_config()

    try:
        result = await db.execute(
            select(TenantPaymentGatewayKey).where(
                TenantPaymentGatewayKey.tenant_id == tenant_id,
                TenantPaymentGatewayKey.provider_id == provider_id,
                TenantPaymentGatewayKey.status.in_(ACTIVE_KEY_STATUSES),
            )
        )
    except DBAPIError as e:
        if is_missing_relation_error(e, "tenant_payment_gateway_keys"):
            await db.rollback()
            return env_fallback_config()
        raise

    now = datetime.now(timezone.utc)
    rows = [row for row in result.scalars().all() if is_key_row_active(row, now)]
    config = tenant_config_from_rows(rows)
    if config is None:
        logger.info(
            "No usable tenant gateway keys, using env configuration",
            extra_data={"tenant_id": tenant_id, "candidate_rows": len(rows)},
        )
        return env_fallback_config()
    return config
