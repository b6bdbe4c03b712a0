"""
Payments Service - רשומות תשלום ו-reconciliation של webhooks מ-Billplz

נתיב ראשי: פרוצדורה אטומית אחת ב-DB (process_billplz_webhook_event) שמבצעת
בטרנזקציה אחת: lookup-or-insert של האירוע לפי (tenant_id, provider_event_id)
או fingerprint, מעבר סטטוס מוגן, והחזרת שורת outcome אחת.

נתיב גישור (fallback): כשהפרוצדורה עוד לא קיימת בסביבה —
get_payment_by_billplz_id → update_payment → record_payment_event.
הנתיב הזה אינו idempotent מול webhooks כפולים מקבילים (race): שני
תהליכים יכולים לעבור את בדיקת ה-replay יחד ולהחיל את אותו אירוע פעמיים.
הוא קיים רק עד שהפרוצדורה נפרסת, ולעולם לא כנתיב ראשי.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    PaymentIdempotencyConflictError,
    PaymentProcessingError,
    WebhookReconciliationError,
)
from app.core.logging import get_logger
from app.core.redaction import log_payment_error, redact_value
from app.db.errors import StoreError, StoreErrorKind, classify_store_error
from app.db.models.payment import Payment, PaymentLineItem, PaymentStatus
from app.db.models.payment_event import PaymentEvent
from app.db.rpc import call_procedure, first_row
from app.domain.services.payment_security import (
    can_transition_payment_status,
    expected_payment_amount_cents,
    resolve_billplz_status,
)

logger = get_logger(__name__)

PROCESS_WEBHOOK_PROCEDURE = "process_billplz_webhook_event"

EVENT_SOURCE_BILLPLZ = "billplz"
EVENT_SOURCE_APP = "app"

EVENT_WEBHOOK_PROCESSED = "webhook_processed"
EVENT_WEBHOOK_INVALID_SIGNATURE = "webhook_rejected_invalid_signature"
EVENT_WEBHOOK_COLLECTION_MISMATCH = "webhook_rejected_collection_mismatch"
EVENT_WEBHOOK_AMOUNT_MISMATCH = "webhook_rejected_amount_mismatch"
EVENT_WEBHOOK_INVALID_TRANSITION = "webhook_ignored_invalid_transition"
EVENT_REFRESH = "billplz_refresh"
EVENT_REFRESH_AMOUNT_MISMATCH = "billplz_refresh_amount_mismatch"
EVENT_REFRESH_COLLECTION_MISMATCH = "billplz_refresh_collection_mismatch"
EVENT_REFRESH_INVALID_TRANSITION = "billplz_refresh_ignored_invalid_transition"


class ReconciliationOutcome(str, Enum):
    """תוצאה סגורה של ניסיון עיבוד webhook"""
    CREATED = "created"
    REPLAY = "replay"
    CONFLICT = "conflict"
    APPLIED = "applied"
    NOT_FOUND = "not_found"
    RPC_UNAVAILABLE = "rpc_unavailable"
    # ערכים שהפרוצדורה עצמה מחזירה
    IGNORED = "ignored"
    REJECTED = "rejected"


@dataclass(frozen=True)
class BillplzWebhookCommand:
    """שדות webhook מנורמלים — הקלט לפרוצדורה האטומית ולנתיב הגישור"""
    tenant_id: str
    billplz_id: str
    provider_event_id: str
    webhook_fingerprint: str
    received_amount_cents: int
    paid: bool
    state: Optional[str]
    due_at: Optional[datetime]
    paid_at: Optional[datetime]
    payload: dict[str, Any]


@dataclass(frozen=True)
class WebhookOutcomeRow:
    outcome: ReconciliationOutcome
    payment_id: Optional[str] = None
    current_status: Optional[str] = None
    next_status: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "WebhookOutcomeRow":
        """outcome לא מוכר = שבירת חוזה מול ה-DB ולכן כשל (500), לא ניחוש"""
        raw_outcome = row.get("outcome")
        try:
            outcome = ReconciliationOutcome(raw_outcome)
        except ValueError:
            raise WebhookReconciliationError(
                f"Unknown webhook outcome from {PROCESS_WEBHOOK_PROCEDURE}: {raw_outcome!r}"
            ) from None
        return cls(
            outcome=outcome,
            payment_id=_as_text(row.get("payment_id")),
            current_status=_as_text(row.get("current_status")),
            next_status=_as_text(row.get("next_status")),
            raw=dict(row),
        )


@dataclass
class PaymentCartItem:
    child_id: str
    fee_id: str
    child_name: str
    fee_name: str
    quantity: int
    unit_amount_cents: int
    subtotal_cents: int
    months: list[str] = field(default_factory=list)


@dataclass
class CreatePaymentInput:
    parent_id: str
    total_cents: int
    merchant_fee_cents: int
    tenant_id: Optional[str] = None
    items: list[PaymentCartItem] = field(default_factory=list)
    payable_months: list[str] = field(default_factory=list)
    status: PaymentStatus = PaymentStatus.INITIATED
    provider_id: Optional[str] = None
    billplz_id: Optional[str] = None
    redirect_url: Optional[str] = None
    idempotency_key: Optional[str] = None
    checkout_fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class GatewayStatusUpdate:
    """תוצאת החלת סטטוס מה-gateway על רשומת תשלום"""
    current_status: PaymentStatus
    next_status: PaymentStatus
    allowed: bool
    updated: bool


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_gateway_timestamp(value: Any) -> Optional[datetime]:
    """timestamps של Billplz (ISO / '2015-03-09 16:23:59 +0800' / '2015-3-9') → datetime"""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def to_payment_error(error: Any) -> AppException:
    """מיפוי כשל ל-AppException; טקסט פנימי לעולם לא מגיע ללקוח"""
    if isinstance(error, AppException):
        return error
    if classify_store_error(error) is StoreErrorKind.UNIQUE_VIOLATION:
        return PaymentIdempotencyConflictError(internal_message=str(error))
    return PaymentProcessingError(internal_message=str(error))


class PaymentsService:
    """Service for payment records and gateway reconciliation"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Payment records ====================

    async def create_payment_record(self, data: CreatePaymentInput) -> Payment:
        """
        יצירת תשלום + שורות חיוב.

        unique violation (מפתח idempotency שכבר משויך לתשלום אחר) →
        PaymentIdempotencyConflictError (409) ולא כשל כללי.
        """
        payment = Payment(
            tenant_id=data.tenant_id,
            parent_id=data.parent_id,
            provider_id=data.provider_id,
            status=data.status,
            total_amount_cents=data.total_cents,
            merchant_fee_cents=data.merchant_fee_cents,
            payable_months=list(data.payable_months),
            billplz_id=data.billplz_id,
            redirect_url=data.redirect_url,
            idempotency_key=data.idempotency_key,
            checkout_fingerprint=data.checkout_fingerprint,
            expires_at=data.expires_at,
        )
        payment.line_items = [
            PaymentLineItem(
                child_id=item.child_id,
                fee_id=item.fee_id,
                label=f"{item.child_name} · {item.fee_name}",
                quantity=item.quantity,
                unit_amount_cents=item.unit_amount_cents,
                subtotal_cents=item.subtotal_cents,
                metadata_={
                    "months": list(item.months),
                    "childName": item.child_name,
                    "feeName": item.fee_name,
                },
            )
            for item in data.items
        ]

        try:
            self.db.add(payment)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            error = to_payment_error(e)
            log_payment_error("create-payment", e, {
                "tenant_id": data.tenant_id,
                "parent_id": data.parent_id,
                "error_code": error.code,
            })
            raise error from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            log_payment_error("create-payment", e, {"tenant_id": data.tenant_id})
            raise to_payment_error(e) from e

        await self.db.refresh(payment)
        logger.info(
            "Payment record created",
            extra_data={
                "payment_id": payment.id,
                "tenant_id": payment.tenant_id,
                "status": payment.status.value,
                "line_items": len(data.items),
            },
        )
        return payment

    async def find_recent_pending_payment_by_idempotency_key(
        self,
        tenant_id: str,
        parent_id: str,
        idempotency_key: str,
        max_age_minutes: int = 30,
    ) -> Optional[Payment]:
        """תשלום פתוח (initiated/pending) שנוצר לאחרונה עם אותו מפתח"""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.tenant_id == tenant_id,
                Payment.parent_id == parent_id,
                Payment.idempotency_key == idempotency_key,
                Payment.status.in_([PaymentStatus.INITIATED, PaymentStatus.PENDING]),
                Payment.created_at >= cutoff,
            )
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_payment_by_billplz_id(self, bill_id: str) -> Optional[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.billplz_id == bill_id))
        return result.scalar_one_or_none()

    async def get_payment_by_id(self, payment_id: str) -> Optional[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.id == payment_id))
        return result.scalar_one_or_none()

    _UPDATABLE_FIELDS = frozenset({
        "billplz_id",
        "total_amount_cents",
        "merchant_fee_cents",
        "status",
        "paid_at",
        "expires_at",
        "redirect_url",
    })

    async def update_payment(self, payment_id: str, **changes: Any) -> Payment:
        """עדכון שדות מותרים בלבד; updated_at מתעדכן תמיד"""
        unknown = set(changes) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {sorted(unknown)}")

        payment = await self.get_payment_by_id(payment_id)
        if payment is None:
            raise PaymentProcessingError(internal_message=f"Payment {payment_id} not found for update")

        for name, value in changes.items():
            setattr(payment, name, value)
        payment.updated_at = datetime.now(timezone.utc)

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            log_payment_error("update-payment", e, {"payment_id": payment_id})
            raise to_payment_error(e) from e

        await self.db.refresh(payment)
        return payment

    # ==================== Audit events ====================

    async def record_payment_event(
        self,
        payment_id: str,
        source: str,
        event_type: str,
        payload: dict[str, Any],
        *,
        tenant_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        provider_event_id: Optional[str] = None,
        provider_event_fingerprint: Optional[str] = None,
    ) -> bool:
        """
        רישום אירוע append-only.

        כשל ברישום לא מפיל את ה-webhook — נרשם בלוג (ממוסך) ומוחזר False.
        """
        event = PaymentEvent(
            payment_id=payment_id,
            tenant_id=tenant_id,
            provider_id=provider_id,
            source=source,
            event_type=event_type,
            payload=redact_value(payload, mask_opaque=False),
            provider_event_id=provider_event_id,
            provider_event_fingerprint=provider_event_fingerprint,
        )
        try:
            self.db.add(event)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            log_payment_error("record-payment-event", e, {
                "payment_id": payment_id,
                "event_type": event_type,
            })
            await self._reload_after_rollback()
            return False
        return True

    async def _reload_after_rollback(self) -> None:
        """rollback מסמן את כל האובייקטים ב-session כ-expired (גם עם
        expire_on_commit=False). טעינה מחדש כאן, כדי שהקורא ימשיך להשתמש
        ב-payment שבידו בלי lazy load מחוץ ל-greenlet."""
        for instance in list(self.db.identity_map.values()):
            try:
                await self.db.refresh(instance)
            except SQLAlchemyError as e:
                log_payment_error("reload-after-rollback", e, {
                    "entity": type(instance).__name__,
                })
                raise

    async def has_processed_webhook_event(self, payment_id: str, webhook_fingerprint: str) -> bool:
        result = await self.db.execute(
            select(PaymentEvent.id)
            .where(
                PaymentEvent.payment_id == payment_id,
                PaymentEvent.provider_event_fingerprint == webhook_fingerprint,
                PaymentEvent.event_type == EVENT_WEBHOOK_PROCESSED,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    # ==================== Reconciliation ====================

    async def process_billplz_webhook_atomically(
        self,
        command: BillplzWebhookCommand,
    ) -> Optional[WebhookOutcomeRow]:
        """
        קריאה לפרוצדורה האטומית.

        מחזיר את שורת ה-outcome הראשונה כמו שהיא; None כשהפרוצדורה לא
        קיימת בסביבה (המתקשר עובר לנתיב הגישור). כל כשל אחר נזרק.
        """
        try:
            rows = await call_procedure(self.db, PROCESS_WEBHOOK_PROCEDURE, {
                "p_tenant_id": command.tenant_id,
                "p_billplz_id": command.billplz_id,
                "p_provider_event_id": command.provider_event_id,
                "p_webhook_fingerprint": command.webhook_fingerprint,
                "p_received_amount_cents": command.received_amount_cents,
                "p_paid": command.paid,
                "p_state": command.state,
                "p_due_at": command.due_at,
                "p_paid_at": command.paid_at,
                "p_payload": command.payload,
            })
        except StoreError as e:
            if classify_store_error(e, function=PROCESS_WEBHOOK_PROCEDURE) is StoreErrorKind.MISSING_FUNCTION:
                logger.warning(
                    "Atomic webhook procedure not deployed, using fallback path",
                    extra_data={"procedure": PROCESS_WEBHOOK_PROCEDURE, "tenant_id": command.tenant_id},
                )
                return None
            raise

        row = first_row(rows)
        if row is None:
            raise WebhookReconciliationError(f"{PROCESS_WEBHOOK_PROCEDURE} returned no rows")
        return WebhookOutcomeRow.from_row(row)

    async def apply_gateway_status(
        self,
        payment: Payment,
        *,
        paid: bool,
        state: Optional[str],
        paid_at: Optional[datetime] = None,
        due_at: Optional[datetime] = None,
    ) -> GatewayStatusUpdate:
        """
        החלת סטטוס מה-gateway (webhook או poll) עם שמירת טבלת המעברים.

        מעבר לא חוקי לא משנה כלום. paid_at נקבע פעם אחת ולא נדרס.
        """
        current_status = PaymentStatus(payment.status)
        next_status = resolve_billplz_status(paid, state)

        if not can_transition_payment_status(current_status, next_status):
            return GatewayStatusUpdate(current_status, next_status, allowed=False, updated=False)

        if next_status == PaymentStatus.PAID:
            resolved_paid_at = payment.paid_at or paid_at or datetime.now(timezone.utc)
        else:
            resolved_paid_at = payment.paid_at

        should_update = (
            current_status != next_status
            or (next_status == PaymentStatus.PAID and payment.paid_at is None)
            or (due_at is not None and _aware(payment.expires_at) != _aware(due_at))
        )
        if should_update:
            await self.update_payment(
                payment.id,
                status=next_status,
                paid_at=resolved_paid_at,
                expires_at=due_at or payment.expires_at,
            )
        return GatewayStatusUpdate(current_status, next_status, allowed=True, updated=should_update)

    async def apply_webhook_fallback(
        self,
        payment: Payment,
        command: BillplzWebhookCommand,
        provider_id: Optional[str] = None,
    ) -> ReconciliationOutcome:
        """
        נתיב הגישור הלא-אטומי: replay → סכום → מעבר סטטוס → עדכון → אירוע.

        racy מול webhooks כפולים מקבילים; בשימוש רק כשהפרוצדורה חסרה.
        """
        # הקריאה שנכשלה לפרוצדורה עשתה rollback — טעינה מחדש של המצב העדכני
        await self.db.refresh(payment)

        event_keys = {
            "tenant_id": command.tenant_id,
            "provider_id": provider_id,
            "provider_event_id": command.provider_event_id,
            "provider_event_fingerprint": command.webhook_fingerprint,
        }

        if await self.has_processed_webhook_event(payment.id, command.webhook_fingerprint):
            return ReconciliationOutcome.REPLAY

        expected_amount = expected_payment_amount_cents(
            payment.total_amount_cents, payment.merchant_fee_cents
        )
        if command.received_amount_cents != expected_amount:
            await self.record_payment_event(payment.id, EVENT_SOURCE_BILLPLZ, EVENT_WEBHOOK_AMOUNT_MISMATCH, {
                "billId": command.billplz_id,
                "expectedAmountCents": expected_amount,
                "receivedAmountCents": command.received_amount_cents,
                "fingerprint": command.webhook_fingerprint,
            }, **event_keys)
            logger.warning(
                "Webhook amount mismatch",
                extra_data={
                    "payment_id": payment.id,
                    "expected_amount_cents": expected_amount,
                    "received_amount_cents": command.received_amount_cents,
                },
            )
            return ReconciliationOutcome.CONFLICT

        update = await self.apply_gateway_status(
            payment,
            paid=command.paid,
            state=command.state,
            paid_at=command.paid_at,
            due_at=command.due_at,
        )
        if not update.allowed:
            await self.record_payment_event(payment.id, EVENT_SOURCE_BILLPLZ, EVENT_WEBHOOK_INVALID_TRANSITION, {
                "fromStatus": update.current_status.value,
                "toStatus": update.next_status.value,
                "billId": command.billplz_id,
                "fingerprint": command.webhook_fingerprint,
            }, **event_keys)
            return ReconciliationOutcome.IGNORED

        await self.record_payment_event(payment.id, EVENT_SOURCE_BILLPLZ, EVENT_WEBHOOK_PROCESSED, {
            "billId": command.billplz_id,
            "currentStatus": update.current_status.value,
            "nextStatus": update.next_status.value,
            "receivedAmountCents": command.received_amount_cents,
            **command.payload,
            "fingerprint": command.webhook_fingerprint,
        }, **event_keys)

        logger.info(
            "Webhook applied via fallback path",
            extra_data={
                "payment_id": payment.id,
                "from_status": update.current_status.value,
                "to_status": update.next_status.value,
            },
        )
        return ReconciliationOutcome.APPLIED
