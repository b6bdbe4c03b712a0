"""
Payment Security Helpers

פונקציות טהורות לנתיב התשלומים: טבלת מעברי סטטוס, מיפוי סטטוס Billplz,
חישוב סכומים, טביעות אצבע (fingerprints) ל-idempotency, וקריאת body
עם מגבלת גודל.
"""
import hashlib
import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable
from urllib.parse import urljoin, urlsplit

from fastapi import Request

from app.core.exceptions import PayloadTooLargeError
from app.db.models.payment import PaymentStatus

MONTH_KEY_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

ALLOWED_STATUS_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.DRAFT: frozenset({PaymentStatus.INITIATED}),
    PaymentStatus.INITIATED: frozenset({
        PaymentStatus.PENDING,
        PaymentStatus.PAID,
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
    }),
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED, PaymentStatus.EXPIRED}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.EXPIRED}),
    PaymentStatus.EXPIRED: frozenset({PaymentStatus.PENDING, PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.REFUNDED: frozenset(),
}


def can_transition_payment_status(current: PaymentStatus | str, next_status: PaymentStatus | str) -> bool:
    """מעבר זהה תמיד מותר (no-op); מ-paid אפשר רק ל-refunded"""
    try:
        current = PaymentStatus(current)
        next_status = PaymentStatus(next_status)
    except ValueError:
        return False
    if current == next_status:
        return True
    return next_status in ALLOWED_STATUS_TRANSITIONS[current]


def resolve_billplz_status(paid: bool, state: str | None = None) -> PaymentStatus:
    if paid:
        return PaymentStatus.PAID
    if state == "pending":
        return PaymentStatus.PENDING
    if state in ("overdue", "expired"):
        return PaymentStatus.EXPIRED
    return PaymentStatus.FAILED


def expected_payment_amount_cents(total_cents: int | None, merchant_fee_cents: int | None) -> int:
    return max(0, int(total_cents or 0)) + max(0, int(merchant_fee_cents or 0))


def parse_amount_cents(value: Any) -> int | None:
    """'1500' / 1500 / 1500.9 → 1500; None לכל קלט לא מספרי"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return int(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        number = float(value.strip())
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return int(number)


def normalize_month_keys(months: Iterable[str]) -> list[str]:
    """YYYY-MM בלבד, ללא כפילויות, ממוין"""
    return sorted({m.strip() for m in months if isinstance(m, str) and MONTH_KEY_RE.match(m.strip())})


@dataclass
class CheckoutFingerprintLine:
    child_id: str
    fee_id: str
    quantity: int
    unit_amount_cents: int
    months: list[str] = field(default_factory=list)


def create_checkout_fingerprint(lines: Iterable[CheckoutFingerprintLine], merchant_fee_cents: int) -> str:
    """טביעת אצבע של עגלת checkout — אותה עגלה ⇒ אותו hash, בלי תלות בסדר"""
    normalized = [
        {
            "childId": line.child_id,
            "feeId": line.fee_id,
            "quantity": max(1, int(line.quantity)),
            "unitAmountCents": max(0, int(line.unit_amount_cents)),
            "months": normalize_month_keys(line.months or []),
        }
        for line in lines
    ]
    normalized.sort(key=lambda item: f"{item['childId']}:{item['feeId']}:{','.join(item['months'])}")
    payload = json.dumps(
        {"merchantFeeCents": max(0, int(merchant_fee_cents)), "lines": normalized},
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def create_webhook_fingerprint(payload: dict[str, Any]) -> str:
    """sha256 על k=v ממוינים לפי מפתח, מחוברים ב-&"""
    canonical = "&".join(
        f"{key}={'' if payload[key] is None else payload[key]}" for key in sorted(payload)
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def create_billplz_provider_event_id(bill_id: str, webhook_fingerprint: str) -> str:
    return f"{bill_id}:{webhook_fingerprint}"


def resolve_safe_redirect_url(redirect_url: str | None, app_base_url: str, fallback_path: str) -> str:
    """redirect רק לאותו origin של האפליקציה — מונע open redirect"""
    safe_base = app_base_url.rstrip("/")
    path = fallback_path if fallback_path.startswith("/") else f"/{fallback_path}"
    fallback = f"{safe_base}{path}"
    if not redirect_url:
        return fallback

    try:
        base = urlsplit(safe_base)
        candidate_url = urljoin(f"{safe_base}/", redirect_url)
        candidate = urlsplit(candidate_url)
    except ValueError:
        return fallback

    if (candidate.scheme, candidate.netloc) != (base.scheme, base.netloc):
        return fallback
    return candidate_url


def is_payment_owned_by_tenant_parent(payment: Any, tenant_id: str, parent_id: str) -> bool:
    if payment is None:
        return False
    return payment.tenant_id == tenant_id and payment.parent_id == parent_id


def _content_type(request: Request) -> str:
    return (request.headers.get("content-type") or "").split(";")[0].strip().lower()


def is_form_urlencoded_content_type(request: Request) -> bool:
    return _content_type(request) == "application/x-www-form-urlencoded"


async def read_body_with_limit(request: Request, max_bytes: int) -> bytes:
    """קריאת body בחלקים; זורק PayloadTooLargeError ברגע שעוברים את המגבלה"""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLargeError()

    chunks: list[bytes] = []
    total = 0
    async for chunk in request.stream():
        if not chunk:
            continue
        total += len(chunk)
        if total > max_bytes:
            raise PayloadTooLargeError()
        chunks.append(chunk)
    return b"".join(chunks)
