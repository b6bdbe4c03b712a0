"""
בדיקות לתשתית הלוגים — app/core/logging.py
"""
import json
import logging
from io import StringIO

import pytest

from app.core.logging import (
    JSONFormatter,
    generate_correlation_id,
    generate_request_id,
    get_correlation_id,
    get_logger,
    log_async_operation,
    set_correlation_id,
    set_request_id,
)


@pytest.fixture
def captured():
    """logger של המודול (כמו ש-log_async_operation בוחר) עם JSONFormatter ל-StringIO"""
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger = get_logger(__name__)
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield logger, stream
    logger.removeHandler(handler)


def _entries(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestIdentifiers:

    @pytest.mark.unit
    def test_correlation_id_is_short(self):
        cid = generate_correlation_id()
        assert len(cid) == 8

    @pytest.mark.unit
    def test_request_id_is_full_uuid(self):
        request_id = generate_request_id()
        assert len(request_id) == 36
        assert request_id != generate_request_id()

    @pytest.mark.unit
    def test_set_correlation_id_keeps_value(self):
        assert set_correlation_id("corr1234") == "corr1234"
        assert get_correlation_id() == "corr1234"

    @pytest.mark.unit
    def test_set_correlation_id_generates_when_empty(self):
        assert len(set_correlation_id(None)) == 8


class TestJSONFormatter:

    @pytest.mark.unit
    def test_entry_shape(self, captured):
        logger, stream = captured
        set_correlation_id("webhook1")

        logger.info("Billplz webhook received", extra_data={"bill_id": "bill_abc123"})

        entry = _entries(stream)[-1]
        assert entry["level"] == "INFO"
        assert entry["logger"] == __name__
        assert entry["message"] == "Billplz webhook received"
        assert entry["correlation_id"] == "webhook1"
        assert entry["extra"] == {"bill_id": "bill_abc123"}
        assert entry["timestamp"].endswith("Z")

    @pytest.mark.unit
    def test_request_id_included(self, captured):
        logger, stream = captured
        set_request_id("4f1c2a9e-0000-4000-8000-000000000001")

        logger.warning("Webhook signature rejected")

        assert _entries(stream)[-1]["request_id"] == "4f1c2a9e-0000-4000-8000-000000000001"

    @pytest.mark.unit
    def test_exception_info(self, captured):
        logger, stream = captured
        try:
            raise ValueError("bad amount")
        except ValueError:
            logger.error("Amount parsing failed", exc_info=True)

        assert "ValueError" in _entries(stream)[-1]["exception"]


class TestLogAsyncOperation:

    @pytest.mark.unit
    async def test_success_logs_duration(self, captured):
        logger, stream = captured

        @log_async_operation("reconcile")
        async def reconcile():
            return "applied"

        assert await reconcile() == "applied"

        completed = _entries(stream)[-1]
        assert completed["message"] == "Completed reconcile"
        assert completed["extra"]["status"] == "completed"
        assert completed["extra"]["duration_seconds"] >= 0

    @pytest.mark.unit
    async def test_failure_does_not_log_exception_text(self, captured):
        logger, stream = captured

        @log_async_operation("fetch_bill")
        async def fetch_bill():
            raise RuntimeError("api_key=sk_live_secret")

        with pytest.raises(RuntimeError):
            await fetch_bill()

        failed = _entries(stream)[-1]
        assert failed["message"] == "Failed fetch_bill"
        assert failed["extra"]["exception_type"] == "RuntimeError"
        assert "sk_live_secret" not in stream.getvalue()
