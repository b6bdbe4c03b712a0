"""
בדיקות ל-Billplz Webhook — POST /api/billplz/webhook

מכסה:
- content type, payload גדול, bill ID חסר / לא מוכר
- חתימה, collection, סכום
- נתיב הגישור (הפרוצדורה האטומית מדומה כלא פרוסה): applied / replay / ignored
- outcomes מהפרוצדורה האטומית
"""
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from app.db.models.payment import PaymentStatus
from app.db.models.payment_event import PaymentEvent
from app.domain.services.billplz.signature import compute_billplz_signature
from app.domain.services.payments_service import (
    EVENT_WEBHOOK_COLLECTION_MISMATCH,
    EVENT_WEBHOOK_INVALID_SIGNATURE,
    EVENT_WEBHOOK_PROCESSED,
    PaymentsService,
    ReconciliationOutcome,
    WebhookOutcomeRow,
)

WEBHOOK_URL = "/api/billplz/webhook"


def signed_payload(signature_key: str, **overrides) -> dict[str, str]:
    payload = {
        "id": "bill_abc123",
        "collection_id": "col_main",
        "paid": "true",
        "state": "paid",
        "amount": "10150",
        "paid_amount": "10150",
        "due_at": "2025-3-9",
        "paid_at": "2025-03-09 16:23:59 +0800",
        "url": "https://www.billplz.com/bills/bill_abc123",
    }
    payload.update(overrides)
    payload["x_signature"] = compute_billplz_signature(payload, signature_key)
    return payload


@pytest.fixture
def atomic_not_deployed(monkeypatch):
    """הפרוצדורה האטומית לא קיימת — הבקשה עוברת לנתיב הגישור"""
    atomic = AsyncMock(return_value=None)
    monkeypatch.setattr(PaymentsService, "process_billplz_webhook_atomically", atomic)
    return atomic


@pytest.fixture
async def payment(tenant_factory, payment_factory):
    tenant = await tenant_factory()
    return await payment_factory(tenant.id)


async def event_types(db_session, payment_id: str) -> list[str]:
    result = await db_session.execute(
        select(PaymentEvent.event_type).where(PaymentEvent.payment_id == payment_id)
    )
    return list(result.scalars().all())


class TestWebhookRequestValidation:

    @pytest.mark.integration
    async def test_json_body_rejected(self, test_client):
        response = await test_client.post(WEBHOOK_URL, json={"id": "bill_abc123"})
        assert response.status_code == 415
        assert response.json()["code"] == "UNSUPPORTED_MEDIA_TYPE"

    @pytest.mark.integration
    async def test_oversized_body_rejected(self, test_client):
        response = await test_client.post(WEBHOOK_URL, data={"id": "bill_abc123", "pad": "x" * (70 * 1024)})
        assert response.status_code == 413

    @pytest.mark.integration
    async def test_missing_bill_id(self, test_client):
        response = await test_client.post(WEBHOOK_URL, data={"paid": "true"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Missing bill ID"
        assert body["field"] == "id"
        assert body["request_id"]

    @pytest.mark.integration
    async def test_unknown_bill(self, test_client, billplz_env):
        response = await test_client.post(WEBHOOK_URL, data=signed_payload(billplz_env["signature_key"]))
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    @pytest.mark.integration
    async def test_payment_without_tenant_is_not_found(self, test_client, billplz_env, payment_factory):
        await payment_factory(None)
        response = await test_client.post(WEBHOOK_URL, data=signed_payload(billplz_env["signature_key"]))
        assert response.status_code == 404

    @pytest.mark.integration
    async def test_gateway_not_configured(self, test_client, payment):
        response = await test_client.post(WEBHOOK_URL, data=signed_payload("any-key"))
        assert response.status_code == 503
        assert response.json()["error"] == "Payment gateway is not configured."


class TestWebhookVerification:

    @pytest.mark.integration
    async def test_invalid_signature(self, test_client, db_session, billplz_env, payment):
        response = await test_client.post(WEBHOOK_URL, data=signed_payload("wrong-key"))

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid signature"
        assert await event_types(db_session, payment.id) == [EVENT_WEBHOOK_INVALID_SIGNATURE]

    @pytest.mark.integration
    async def test_foreign_collection(self, test_client, db_session, billplz_env, payment):
        payload = signed_payload(billplz_env["signature_key"], collection_id="col_foreign")
        response = await test_client.post(WEBHOOK_URL, data=payload)

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid collection ID"
        assert await event_types(db_session, payment.id) == [EVENT_WEBHOOK_COLLECTION_MISMATCH]

    @pytest.mark.integration
    async def test_invalid_amount(self, test_client, billplz_env, payment):
        payload = signed_payload(billplz_env["signature_key"], amount="ten")
        response = await test_client.post(WEBHOOK_URL, data=payload)
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid amount"

    @pytest.mark.integration
    async def test_signature_never_reaches_audit_payload(
        self, test_client, db_session, billplz_env, payment, atomic_not_deployed
    ):
        await test_client.post(WEBHOOK_URL, data=signed_payload(billplz_env["signature_key"]))
        result = await db_session.execute(select(PaymentEvent.payload))
        for payload in result.scalars().all():
            assert "x_signature" not in payload


class TestWebhookFallbackPath:

    @pytest.mark.integration
    async def test_paid_webhook_applies(self, test_client, db_session, billplz_env, payment, atomic_not_deployed):
        response = await test_client.post(WEBHOOK_URL, data=signed_payload(billplz_env["signature_key"]))

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        await db_session.refresh(payment)
        assert payment.status == PaymentStatus.PAID
        assert payment.paid_at is not None
        assert await event_types(db_session, payment.id) == [EVENT_WEBHOOK_PROCESSED]

        command = atomic_not_deployed.await_args.args[0]
        assert command.received_amount_cents == 10150
        assert command.paid is True
        assert command.provider_event_id == f"bill_abc123:{command.webhook_fingerprint}"

    @pytest.mark.integration
    async def test_bracketed_keys_accepted(self, test_client, db_session, billplz_env, payment, atomic_not_deployed):
        plain = signed_payload(billplz_env["signature_key"])
        bracketed = {
            (key if key == "x_signature" else f"billplz[{key}]"): value
            for key, value in plain.items()
        }
        response = await test_client.post(WEBHOOK_URL, data=bracketed)
        assert response.status_code == 200

    @pytest.mark.integration
    async def test_duplicate_webhook_is_replay(self, test_client, db_session, billplz_env, payment, atomic_not_deployed):
        payload = signed_payload(billplz_env["signature_key"])

        first = await test_client.post(WEBHOOK_URL, data=payload)
        second = await test_client.post(WEBHOOK_URL, data=payload)

        assert first.json() == {"ok": True}
        assert second.status_code == 200
        assert second.json() == {"ok": True, "replay": True}
        assert await event_types(db_session, payment.id) == [EVENT_WEBHOOK_PROCESSED]

    @pytest.mark.integration
    async def test_amount_mismatch(self, test_client, billplz_env, payment, atomic_not_deployed):
        payload = signed_payload(billplz_env["signature_key"], amount="10000")
        response = await test_client.post(WEBHOOK_URL, data=payload)
        assert response.status_code == 400
        assert response.json()["error"] == "Amount mismatch"

    @pytest.mark.integration
    async def test_late_failure_after_paid_is_ignored(
        self, test_client, db_session, billplz_env, tenant_factory, payment_factory, atomic_not_deployed
    ):
        tenant = await tenant_factory()
        paid_payment = await payment_factory(tenant.id, status=PaymentStatus.PAID)

        payload = signed_payload(billplz_env["signature_key"], paid="false", state="due")
        response = await test_client.post(WEBHOOK_URL, data=payload)

        assert response.status_code == 200
        assert response.json() == {"ok": True, "ignored": True}
        await db_session.refresh(paid_payment)
        assert paid_payment.status == PaymentStatus.PAID


class TestWebhookAtomicOutcomes:

    @pytest.mark.integration
    @pytest.mark.parametrize("outcome,status,body", [
        (ReconciliationOutcome.CREATED, 200, {"ok": True}),
        (ReconciliationOutcome.APPLIED, 200, {"ok": True}),
        (ReconciliationOutcome.REPLAY, 200, {"ok": True, "replay": True}),
        (ReconciliationOutcome.IGNORED, 200, {"ok": True, "ignored": True}),
    ])
    async def test_success_outcomes(self, test_client, billplz_env, payment, monkeypatch, outcome, status, body):
        monkeypatch.setattr(
            PaymentsService, "process_billplz_webhook_atomically",
            AsyncMock(return_value=WebhookOutcomeRow(outcome=outcome)),
        )
        response = await test_client.post(WEBHOOK_URL, data=signed_payload(billplz_env["signature_key"]))
        assert response.status_code == status
        assert response.json() == body

    @pytest.mark.integration
    @pytest.mark.parametrize("outcome,status,error", [
        (ReconciliationOutcome.NOT_FOUND, 404, "Payment not found."),
        (ReconciliationOutcome.CONFLICT, 400, "Amount mismatch"),
        (ReconciliationOutcome.REJECTED, 400, "Invalid webhook payload."),
        (ReconciliationOutcome.RPC_UNAVAILABLE, 500, "Unable to process payment webhook."),
    ])
    async def test_error_outcomes(self, test_client, billplz_env, payment, monkeypatch, outcome, status, error):
        monkeypatch.setattr(
            PaymentsService, "process_billplz_webhook_atomically",
            AsyncMock(return_value=WebhookOutcomeRow(outcome=outcome)),
        )
        response = await test_client.post(WEBHOOK_URL, data=signed_payload(billplz_env["signature_key"]))
        assert response.status_code == status
        assert response.json()["error"] == error

    @pytest.mark.integration
    async def test_unexpected_failure_is_generic_500(self, test_client, billplz_env, payment, monkeypatch):
        monkeypatch.setattr(
            PaymentsService, "process_billplz_webhook_atomically",
            AsyncMock(side_effect=RuntimeError("password=hunter2 connection refused")),
        )
        response = await test_client.post(WEBHOOK_URL, data=signed_payload(billplz_env["signature_key"]))

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "WEBHOOK_RECONCILIATION_FAILED"
        assert "hunter2" not in response.text
