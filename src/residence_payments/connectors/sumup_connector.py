"""SumUp hosted checkout connector."""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import ProviderError, WebhookParseError
from .base import (
    ProviderPaymentHandle,
    ProviderStatus,
    RemotePaymentRequest,
    StatusOutcome,
    WebhookEvent,
    load_json,
    sanitize,
)
from .http import HttpConnector

logger = logging.getLogger(__name__)

BASE_URL = "https://api.sumup.com"


class SumUpConnector(HttpConnector):
    """
    SumUp has no separate sandbox host; test mode is tied to the API key.
    Notifications only say that a checkout changed, so every webhook is
    resolved with a status lookup.
    """

    name = "sumup"

    status_map = {
        "PENDING": StatusOutcome.PROCESSING,
        "PAID": StatusOutcome.COMPLETED,
        "FAILED": StatusOutcome.FAILED,
        "EXPIRED": StatusOutcome.FAILED,
    }

    def __init__(
        self,
        api_key: str,
        merchant_code: str,
        webhook_secret: Optional[str] = None,
        production: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key or not merchant_code:
            raise ValueError("SumUp api_key and merchant_code are required")
        super().__init__(
            BASE_URL,
            http_client=http_client,
            webhook_secret=webhook_secret,
            production=production,
        )
        self._api_key = api_key
        self.merchant_code = merchant_code

    async def _auth_headers(self, method: str, path: str, body: bytes) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def create_remote_payment(self, request: RemotePaymentRequest) -> ProviderPaymentHandle:
        body: Dict[str, Any] = {
            "checkout_reference": request.order_id,
            "amount": request.amount / 100,
            "currency": request.currency.upper(),
            "merchant_code": self.merchant_code,
            "description": request.description,
            "hosted_checkout": {"enabled": True},
        }
        if request.return_url:
            body["redirect_url"] = request.return_url
        if request.callback_url:
            body["return_url"] = request.callback_url

        data = await self._make_request("POST", "/v0.1/checkouts", body)
        checkout_id = data.get("id")
        if not checkout_id:
            raise ProviderError("SumUp response without checkout id", provider=self.name)

        logger.info(f"Created SumUp checkout {checkout_id} for order {request.order_id}")
        return ProviderPaymentHandle(
            provider=self.name,
            provider_payment_id=checkout_id,
            status=self.map_status(data.get("status")),
            redirect_url=data.get("hosted_checkout_url"),
            raw=sanitize(data),
        )

    async def fetch_remote_status(self, provider_payment_id: str) -> ProviderStatus:
        data = await self._make_request("GET", f"/v0.1/checkouts/{provider_payment_id}")
        raw_status = data.get("status")
        amount = data.get("amount")
        return ProviderStatus(
            provider=self.name,
            provider_payment_id=data.get("id", provider_payment_id),
            raw_status=raw_status,
            outcome=self.map_status(raw_status),
            order_id=data.get("checkout_reference"),
            amount=round(amount * 100) if amount is not None else None,
            raw=sanitize(data),
        )

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        payload = load_json(self.name, body)
        checkout_id = payload.get("id") or payload.get("checkout_id")
        if not checkout_id:
            raise WebhookParseError("SumUp notification without checkout id")
        return WebhookEvent(
            provider=self.name,
            event_id=checkout_id,
            event_type=payload.get("event_type", "CHECKOUT_STATUS_CHANGED"),
            provider_payment_id=checkout_id,
            needs_lookup=True,
        )
