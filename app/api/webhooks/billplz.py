"""
Billplz Webhook Handler — callback על שינוי סטטוס של bill.

מקבל form-urlencoded, מאמת חתימה (X-Signature) ו-collection מול מפתחות
ה-tenant של התשלום, ומעביר את ה-reconciliation לפרוצדורה האטומית.
כשהפרוצדורה לא פרוסה — נתיב הגישור של PaymentsService.
Rate limiting לפי IP נעשה ב-WebhookRateLimitMiddleware.
"""
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    NotFoundException,
    UnsupportedMediaTypeError,
    ValidationException,
    WebhookReconciliationError,
)
from app.core.logging import get_logger
from app.core.redaction import log_payment_error
from app.db.database import get_db
from app.domain.services.billplz import (
    is_allowed_billplz_collection,
    normalize_billplz_payload,
    resolve_billplz_config_for_tenant,
    verify_billplz_signature,
)
from app.domain.services.payment_security import (
    create_billplz_provider_event_id,
    create_webhook_fingerprint,
    is_form_urlencoded_content_type,
    parse_amount_cents,
    read_body_with_limit,
)
from app.domain.services.payments_service import (
    EVENT_SOURCE_BILLPLZ,
    EVENT_WEBHOOK_COLLECTION_MISMATCH,
    EVENT_WEBHOOK_INVALID_SIGNATURE,
    BillplzWebhookCommand,
    PaymentsService,
    ReconciliationOutcome,
    parse_gateway_timestamp,
)

logger = get_logger(__name__)

router = APIRouter()

MAX_WEBHOOK_PAYLOAD_BYTES = 64 * 1024

_PAYMENT_NOT_FOUND = "Payment not found."


def _outcome_response(outcome: ReconciliationOutcome) -> dict:
    """outcome → גוף תשובה; outcomes של דחייה נזרקים כ-AppException"""
    if outcome is ReconciliationOutcome.REPLAY:
        return {"ok": True, "replay": True}
    if outcome is ReconciliationOutcome.IGNORED:
        return {"ok": True, "ignored": True}
    if outcome is ReconciliationOutcome.NOT_FOUND:
        raise NotFoundException(_PAYMENT_NOT_FOUND)
    if outcome is ReconciliationOutcome.CONFLICT:
        raise ValidationException("Amount mismatch")
    if outcome is ReconciliationOutcome.REJECTED:
        raise ValidationException("Invalid webhook payload.")
    if outcome in (ReconciliationOutcome.CREATED, ReconciliationOutcome.APPLIED):
        return {"ok": True}
    raise WebhookReconciliationError(f"Outcome {outcome.value} is not valid for a webhook response")


@router.post(
    "/webhook",
    summary="Billplz Webhook",
    description="עדכון סטטוס תשלום מ-Billplz (form-urlencoded, חתום ב-X-Signature).",
    responses={
        200: {"description": "האירוע עובד / replay / ignored"},
        400: {"description": "חתימה, collection, סכום או payload לא תקינים"},
        404: {"description": "אין תשלום עם ה-bill ID הזה"},
        413: {"description": "payload גדול מדי"},
        415: {"description": "content type לא נתמך"},
        429: {"description": "יותר מדי בקשות מאותו IP"},
    },
    tags=["Webhooks"],
)
async def billplz_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Handle a Billplz bill status callback"""
    if not is_form_urlencoded_content_type(request):
        raise UnsupportedMediaTypeError()

    try:
        raw_body = await read_body_with_limit(request, MAX_WEBHOOK_PAYLOAD_BYTES)
        payload = normalize_billplz_payload(
            dict(parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True))
        )
        webhook_fingerprint = create_webhook_fingerprint(payload)

        bill_id = payload.get("id")
        if not bill_id:
            raise ValidationException("Missing bill ID", field="id")

        service = PaymentsService(db)
        payment = await service.get_payment_by_billplz_id(bill_id)
        if payment is None or not payment.tenant_id:
            logger.info(
                "Webhook for unknown bill",
                extra_data={"bill_id": bill_id, "has_payment": payment is not None},
            )
            raise NotFoundException(_PAYMENT_NOT_FOUND)

        tenant_id = payment.tenant_id
        gateway_config = await resolve_billplz_config_for_tenant(db, tenant_id)
        provider_event_id = create_billplz_provider_event_id(bill_id, webhook_fingerprint)
        event_keys = {
            "tenant_id": tenant_id,
            "provider_id": gateway_config.provider_id,
            "provider_event_id": provider_event_id,
            "provider_event_fingerprint": webhook_fingerprint,
        }

        if not verify_billplz_signature(payload, gateway_config.webhook_secrets):
            await service.record_payment_event(payment.id, EVENT_SOURCE_BILLPLZ, EVENT_WEBHOOK_INVALID_SIGNATURE, {
                "billId": bill_id,
                "fingerprint": webhook_fingerprint,
            }, **event_keys)
            logger.warning(
                "Webhook rejected: invalid signature",
                extra_data={"payment_id": payment.id, "tenant_id": tenant_id},
            )
            raise ValidationException("Invalid signature")

        collection_id = payload.get("collection_id")
        if not is_allowed_billplz_collection(collection_id, gateway_config.allowed_collection_ids):
            await service.record_payment_event(payment.id, EVENT_SOURCE_BILLPLZ, EVENT_WEBHOOK_COLLECTION_MISMATCH, {
                "billId": bill_id,
                "collectionId": collection_id,
                "allowedCollectionIds": gateway_config.allowed_collection_ids,
                "fingerprint": webhook_fingerprint,
            }, **event_keys)
            logger.warning(
                "Webhook rejected: collection mismatch",
                extra_data={"payment_id": payment.id, "tenant_id": tenant_id},
            )
            raise ValidationException("Invalid collection ID")

        received_amount_cents = parse_amount_cents(payload.get("amount"))
        if received_amount_cents is None:
            raise ValidationException("Invalid amount", field="amount")

        command = BillplzWebhookCommand(
            tenant_id=tenant_id,
            billplz_id=bill_id,
            provider_event_id=provider_event_id,
            webhook_fingerprint=webhook_fingerprint,
            received_amount_cents=received_amount_cents,
            paid=payload.get("paid") in ("true", "1"),
            state=payload.get("state"),
            due_at=parse_gateway_timestamp(payload.get("due_at")),
            paid_at=parse_gateway_timestamp(payload.get("paid_at")),
            payload={
                "billId": bill_id,
                "paid": payload.get("paid"),
                "state": payload.get("state"),
                "amount": payload.get("amount"),
                "paidAt": payload.get("paid_at"),
                "dueAt": payload.get("due_at"),
                "collectionId": collection_id,
            },
        )

        atomic_result = await service.process_billplz_webhook_atomically(command)
        if atomic_result is not None:
            outcome = atomic_result.outcome
        else:
            outcome = await service.apply_webhook_fallback(payment, command, gateway_config.provider_id)

        logger.info(
            "Billplz webhook handled",
            extra_data={
                "payment_id": payment.id,
                "tenant_id": tenant_id,
                "outcome": outcome.value,
                "atomic": atomic_result is not None,
            },
        )
        return _outcome_response(outcome)

    except AppException:
        raise
    except Exception as e:
        log_payment_error("billplz-webhook", e)
        raise WebhookReconciliationError(f"Unhandled webhook failure: {type(e).__name__}") from e
