"""
Online Slot Claims - אישור תשלום על מקום שמור בשיעור אונליין

הפרוצדורה confirm_online_slot_payment מפעילה את ה-enrollment בטרנזקציה
אחת. התוצאה מנורמלת ל-ConfirmPaymentOutcome עם code סגור.
"""
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ServiceUnavailableError
from app.core.logging import get_logger
from app.core.redaction import redact_string
from app.db.errors import (
    StoreError,
    StoreErrorKind,
    classify_store_error,
)
from app.db.models.online_claim import OnlineSlotClaim
from app.db.rpc import call_procedure, first_row

logger = get_logger(__name__)

CONFIRM_PAYMENT_PROCEDURE = "confirm_online_slot_payment"
CLAIMS_TABLE = "online_slot_claims"

# code → HTTP status; כל code אחר של כשל = 500
CONFIRM_FAILURE_STATUS = {
    "hold_expired": 409,
    "invalid_status": 409,
    "claim_not_found": 404,
    "invalid_request": 400,
}


@dataclass(frozen=True)
class ConfirmPaymentOutcome:
    ok: bool
    code: str
    message: str
    enrollment_id: Optional[str] = None
    claim_status: Optional[str] = None

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        return CONFIRM_FAILURE_STATUS.get(self.code, 500)


def normalize_confirm_row(row: Optional[dict[str, Any]]) -> ConfirmPaymentOutcome:
    if not row:
        return ConfirmPaymentOutcome(
            ok=False,
            code="empty_response",
            message="Payment confirmation RPC returned no data.",
        )

    enrollment_id = row.get("enrollment_id")
    claim_status = row.get("claim_status")
    enrollment_id = str(enrollment_id) if enrollment_id is not None else None

    if not row.get("ok"):
        return ConfirmPaymentOutcome(
            ok=False,
            code=row.get("code") or "confirm_failed",
            message=row.get("message") or "Payment confirmation failed.",
            enrollment_id=enrollment_id,
            claim_status=claim_status,
        )

    code = "already_active" if row.get("code") == "already_active" else "activated"
    return ConfirmPaymentOutcome(
        ok=True,
        code=code,
        message=row.get("message") or "Payment confirmed.",
        enrollment_id=enrollment_id,
        claim_status=claim_status,
    )


def map_confirm_rpc_error() -> ConfirmPaymentOutcome:
    """טקסט השגיאה מה-DB נרשם בלוג בלבד"""
    return ConfirmPaymentOutcome(
        ok=False,
        code="rpc_error",
        message="Unable to confirm payment.",
    )


def _is_flow_not_deployed(error: Any) -> bool:
    return (
        classify_store_error(error, function=CONFIRM_PAYMENT_PROCEDURE) is StoreErrorKind.MISSING_FUNCTION
        or classify_store_error(error, relation=CLAIMS_TABLE) is StoreErrorKind.MISSING_RELATION
    )


_NOT_CONFIGURED_MESSAGE = "Online payment flow is not configured yet. Please contact support."


class OnlineClaimsService:
    """Service for online slot claim payment confirmation"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_parent_claim(self, tenant_id: str, parent_id: str, claim_id: str) -> Optional[OnlineSlotClaim]:
        """claim של ההורה ב-tenant; None גם כשה-claim שייך להורה אחר"""
        try:
            result = await self.db.execute(
                select(OnlineSlotClaim).where(
                    OnlineSlotClaim.tenant_id == tenant_id,
                    OnlineSlotClaim.id == claim_id,
                )
            )
        except DBAPIError as e:
            await self.db.rollback()
            if _is_flow_not_deployed(e):
                raise ServiceUnavailableError(_NOT_CONFIGURED_MESSAGE, internal_message=str(e)) from e
            raise
        claim = result.scalar_one_or_none()
        if claim is None or claim.parent_id != parent_id:
            return None
        return claim

    async def confirm_online_slot_payment(
        self,
        tenant_id: str,
        claim_id: str,
        actor_user_id: str,
        payment_reference: Optional[str] = None,
    ) -> ConfirmPaymentOutcome:
        try:
            rows = await call_procedure(self.db, CONFIRM_PAYMENT_PROCEDURE, {
                "p_tenant_id": tenant_id,
                "p_claim_id": claim_id,
                "p_payment_reference": payment_reference,
                "p_actor_user_id": actor_user_id,
            })
        except StoreError as e:
            if _is_flow_not_deployed(e):
                raise ServiceUnavailableError(_NOT_CONFIGURED_MESSAGE, internal_message=str(e)) from e
            logger.error(
                "Online slot payment confirmation RPC failed",
                extra_data={
                    "tenant_id": tenant_id,
                    "claim_id": claim_id,
                    "code": e.code,
                    "error": redact_string(e.message or ""),
                },
            )
            return map_confirm_rpc_error()

        outcome = normalize_confirm_row(first_row(rows))
        logger.info(
            "Online slot payment confirmation",
            extra_data={
                "tenant_id": tenant_id,
                "claim_id": claim_id,
                "ok": outcome.ok,
                "code": outcome.code,
            },
        )
        return outcome
