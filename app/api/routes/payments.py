"""
Payment API Routes
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import get_current_tenant_user
from app.core.auth import TokenPayload
from app.core.exceptions import AppException, GatewayBillMismatchError, NotFoundException, PaymentProcessingError
from app.core.logging import get_logger
from app.core.rate_limit import require_rate_limit
from app.core.redaction import log_payment_error
from app.core.trust import get_client_ip
from app.db.database import get_db
from app.db.models.payment import PaymentStatus
from app.domain.services.billplz import (
    BillplzClient,
    is_allowed_billplz_collection,
    resolve_billplz_config_for_tenant,
)
from app.domain.services.payment_security import (
    expected_payment_amount_cents,
    is_payment_owned_by_tenant_parent,
    parse_amount_cents,
)
from app.domain.services.payments_service import (
    EVENT_REFRESH,
    EVENT_REFRESH_AMOUNT_MISMATCH,
    EVENT_REFRESH_COLLECTION_MISMATCH,
    EVENT_REFRESH_INVALID_TRANSITION,
    EVENT_SOURCE_APP,
    PaymentsService,
    parse_gateway_timestamp,
)

logger = get_logger(__name__)

router = APIRouter()

REFRESH_RATE_LIMIT = 40
REFRESH_WINDOW_MS = 60 * 1000


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None
    parent_id: str
    status: PaymentStatus
    total_amount_cents: int
    merchant_fee_cents: int
    currency: str
    payable_months: list[str] | None
    billplz_id: str | None
    paid_at: datetime | None
    expires_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None


class RefreshResponse(BaseModel):
    payment: PaymentResponse
    bill: dict[str, Any]
    ignored: bool = False


def _bill_is_paid(bill: dict[str, Any]) -> bool:
    return bill.get("paid") in (True, "true", "1")


@router.get(
    "/{bill_id}/refresh",
    response_model=RefreshResponse,
    summary="רענון סטטוס תשלום מול Billplz",
    description=(
        "שולף את ה-bill מ-Billplz ומחיל את הסטטוס על התשלום של ההורה המחובר. "
        "אי-התאמה בסכום או ב-collection מחזירה 502 ונרשמת כאירוע."
    ),
)
async def refresh_payment_status(
    bill_id: str,
    request: Request,
    auth: TokenPayload = Depends(get_current_tenant_user),
    db: AsyncSession = Depends(get_db),
):
    """Poll Billplz for a bill and reconcile the local payment"""
    await require_rate_limit(
        f"payments:refresh:{auth.tenant_id}:{auth.user_id}:{get_client_ip(request)}",
        REFRESH_RATE_LIMIT,
        REFRESH_WINDOW_MS,
        "Too many status refresh attempts. Please retry shortly.",
    )

    try:
        service = PaymentsService(db)
        payment = await service.get_payment_by_billplz_id(bill_id)
        if not is_payment_owned_by_tenant_parent(payment, auth.tenant_id, auth.user_id):
            raise NotFoundException("Payment not found")

        gateway_config = await resolve_billplz_config_for_tenant(db, auth.tenant_id)
        client = BillplzClient(gateway_config.primary_api_key, gateway_config.api_base)
        bill = await client.fetch_bill(bill_id)

        expected_amount = expected_payment_amount_cents(payment.total_amount_cents, payment.merchant_fee_cents)
        received_amount = parse_amount_cents(bill.get("amount"))
        if received_amount != expected_amount:
            await service.record_payment_event(payment.id, EVENT_SOURCE_APP, EVENT_REFRESH_AMOUNT_MISMATCH, {
                "billId": bill_id,
                "expectedAmountCents": expected_amount,
                "receivedAmountCents": received_amount,
            }, tenant_id=auth.tenant_id)
            raise GatewayBillMismatchError(
                "Bill amount mismatch",
                internal_message=f"expected={expected_amount} received={received_amount}",
            )

        collection_id = bill.get("collection_id")
        if not is_allowed_billplz_collection(collection_id, gateway_config.allowed_collection_ids):
            await service.record_payment_event(payment.id, EVENT_SOURCE_APP, EVENT_REFRESH_COLLECTION_MISMATCH, {
                "billId": bill_id,
                "expectedCollectionIds": gateway_config.allowed_collection_ids,
                "receivedCollectionId": collection_id,
            }, tenant_id=auth.tenant_id)
            raise GatewayBillMismatchError("Bill collection mismatch")

        due_at = parse_gateway_timestamp(bill.get("due_at"))
        paid_at = parse_gateway_timestamp(bill.get("paid_at"))
        update = await service.apply_gateway_status(
            payment,
            paid=_bill_is_paid(bill),
            state=bill.get("state"),
            paid_at=paid_at,
            due_at=due_at,
        )

        if not update.allowed:
            await service.record_payment_event(payment.id, EVENT_SOURCE_APP, EVENT_REFRESH_INVALID_TRANSITION, {
                "billId": bill_id,
                "fromStatus": update.current_status.value,
                "toStatus": update.next_status.value,
            }, tenant_id=auth.tenant_id)
            return {"payment": payment, "bill": bill, "ignored": True}

        await service.record_payment_event(payment.id, EVENT_SOURCE_APP, EVENT_REFRESH, {
            "billId": bill_id,
            "currentStatus": update.current_status.value,
            "nextStatus": update.next_status.value,
            "amountCents": received_amount,
            "dueAt": bill.get("due_at"),
            "paidAt": bill.get("paid_at"),
        }, tenant_id=auth.tenant_id)

        logger.info(
            "Payment refreshed from gateway",
            extra_data={
                "payment_id": payment.id,
                "tenant_id": auth.tenant_id,
                "from_status": update.current_status.value,
                "to_status": update.next_status.value,
                "updated": update.updated,
            },
        )
        return {"payment": payment, "bill": bill}

    except AppException:
        raise
    except Exception as e:
        log_payment_error("payment-refresh", e, {"bill_id": bill_id, "tenant_id": auth.tenant_id})
        raise PaymentProcessingError(internal_message=f"Refresh failed: {type(e).__name__}") from e
