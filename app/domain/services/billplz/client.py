"""
Billplz API Client — קריאות HTTP ל-gateway דרך httpx

שגיאות HTTP / רשת הופכות ל-PaymentGatewayError (502); גוף התשובה
נרשם בלוג אחרי מיסוך בלבד.
"""
import base64
from dataclasses import dataclass
from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import PaymentGatewayError
from app.core.logging import get_logger, log_async_operation
from app.core.redaction import redact_string

logger = get_logger(__name__)


@dataclass
class CreateBillInput:
    collection_id: str
    name: str
    email: str
    mobile: str
    amount_cents: int
    description: str
    callback_url: str
    redirect_url: str
    reference_1: str
    reference_2: str | None = None


class BillplzClient:
    """Client for one Billplz API key + base URL"""

    def __init__(
        self,
        api_key: str,
        api_base: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._api_base = (api_base or settings.BILLPLZ_API_BASE).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.BILLPLZ_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        token = base64.b64encode(f"{self._api_key}:".encode("utf-8")).decode("ascii")
        return {
            "Authorization": f"Basic {token}",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, json_body: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._api_base}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(), json=json_body)
        except httpx.HTTPError as e:
            logger.error(
                "Billplz request failed",
                extra_data={"path": path, "error_type": type(e).__name__},
            )
            raise PaymentGatewayError(internal_message=f"Billplz transport error: {type(e).__name__}") from e

        if response.status_code >= 400:
            logger.error(
                "Billplz request rejected",
                extra_data={
                    "path": path,
                    "status_code": response.status_code,
                    "body": redact_string(response.text[:500]),
                },
            )
            raise PaymentGatewayError(status=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise PaymentGatewayError(internal_message="Billplz returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise PaymentGatewayError(internal_message="Billplz returned an unexpected body")
        return data

    @log_async_operation("billplz_fetch_bill")
    async def fetch_bill(self, bill_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/bills/{bill_id}")

    @log_async_operation("billplz_create_bill")
    async def create_bill(self, bill: CreateBillInput) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "collection_id": bill.collection_id,
            "name": bill.name,
            "email": bill.email,
            "mobile": bill.mobile,
            "amount": max(0, round(bill.amount_cents)),
            "description": bill.description,
            "callback_url": bill.callback_url,
            "redirect_url": bill.redirect_url,
            "reference_1": bill.reference_1,
            "deliver": True,
        }
        if bill.reference_2:
            payload["reference_2"] = bill.reference_2
        return await self._request("POST", "/bills", payload)
