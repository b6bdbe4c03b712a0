"""
Parent Online API Routes — אישור תשלום על מקום שמור בשיעור אונליין
"""
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_tenant_user
from app.core.auth import TokenPayload
from app.core.exceptions import NotFoundException, ValidationException
from app.db.database import get_db
from app.domain.services.online_claims import OnlineClaimsService

router = APIRouter()


class ConfirmOnlinePaymentRequest(BaseModel):
    claim_id: Optional[str] = None
    payment_reference: Optional[str] = None


@router.post(
    "/online/pay",
    summary="אישור תשלום על מקום אונליין",
    description=(
        "מפעיל את ה-enrollment של ה-claim של ההורה המחובר. "
        "hold_expired/invalid_status → 409, claim_not_found → 404, invalid_request → 400."
    ),
)
async def confirm_online_payment(
    data: ConfirmOnlinePaymentRequest,
    auth: TokenPayload = Depends(get_current_tenant_user),
    db: AsyncSession = Depends(get_db),
):
    """Confirm payment for the caller's online slot claim"""
    claim_id = (data.claim_id or "").strip()
    if not claim_id:
        raise ValidationException("claim_id is required", field="claim_id")

    service = OnlineClaimsService(db)
    claim = await service.get_parent_claim(auth.tenant_id, auth.user_id, claim_id)
    if claim is None:
        raise NotFoundException("Claim not found for this parent.")

    outcome = await service.confirm_online_slot_payment(
        auth.tenant_id,
        claim_id,
        auth.user_id,
        payment_reference=data.payment_reference,
    )

    if not outcome.ok:
        return JSONResponse(
            status_code=outcome.http_status,
            content={
                "ok": False,
                "code": outcome.code,
                "error": outcome.message,
                "enrollment_id": outcome.enrollment_id,
                "claim_status": outcome.claim_status,
            },
        )

    return {
        "ok": True,
        "code": outcome.code,
        "message": outcome.message,
        "enrollment_id": outcome.enrollment_id,
        "claim_status": outcome.claim_status,
    }
