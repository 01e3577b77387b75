"""Nexi XPay Global hosted payment page connector."""

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional

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

SANDBOX_URL = "https://xpaysandbox.nexigroup.com"
PRODUCTION_URL = "https://xpay.nexigroup.com"
API_PREFIX = "/api/phoenix-0.0/psp/api/v1"


class NexiConnector(HttpConnector):
    """
    The local order id doubles as the Nexi order id, so the provider
    payment id of a Nexi order is the order id itself.
    """

    name = "nexi"

    # operationResult vocabulary
    status_map = {
        "AUTHORIZED": StatusOutcome.COMPLETED,
        "EXECUTED": StatusOutcome.COMPLETED,
        "DECLINED": StatusOutcome.FAILED,
        "DENIED_BY_RISK": StatusOutcome.FAILED,
        "FAILED": StatusOutcome.FAILED,
        "CANCELED": StatusOutcome.FAILED,
        "VOIDED": StatusOutcome.FAILED,
        "PENDING": StatusOutcome.PROCESSING,
        "THREEDS_VALIDATED": StatusOutcome.PROCESSING,
        "THREEDS_FAILED": StatusOutcome.PROCESSING,
    }

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        production: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("Nexi api_key is required")
        super().__init__(
            PRODUCTION_URL if production else SANDBOX_URL,
            http_client=http_client,
            webhook_secret=webhook_secret,
            production=production,
        )
        self._api_key = api_key

    async def _auth_headers(self, method: str, path: str, body: bytes) -> Dict[str, str]:
        return {"X-Api-Key": self._api_key, "Correlation-Id": str(uuid.uuid4())}

    def _last_result(self, operations: List[Dict[str, Any]]) -> Optional[str]:
        # payment operations only; refunds do not change the order outcome
        payments = [
            op for op in operations
            if op.get("operationType") in (None, "AUTHORIZATION", "CAPTURE")
        ]
        if not payments:
            return None
        payments.sort(key=lambda op: op.get("operationTime") or "")
        return payments[-1].get("operationResult")

    async def create_remote_payment(self, request: RemotePaymentRequest) -> ProviderPaymentHandle:
        amount = str(request.amount)
        body: Dict[str, Any] = {
            "order": {
                "orderId": request.order_id,
                "amount": amount,
                "currency": request.currency.upper(),
                "description": request.description,
                "customerId": request.sigla,
            },
            "paymentSession": {
                "actionType": "PAY",
                "amount": amount,
                "language": "ita",
                "resultUrl": request.return_url or "",
                "cancelUrl": request.return_url or "",
            },
        }
        if request.callback_url:
            body["paymentSession"]["notificationUrl"] = request.callback_url

        data = await self._make_request("POST", f"{API_PREFIX}/orders/hpp", body)
        hosted_page = data.get("hostedPage")
        if not hosted_page:
            raise ProviderError("Nexi response without hosted page", provider=self.name)

        logger.info(f"Created Nexi hosted payment page for order {request.order_id}")
        return ProviderPaymentHandle(
            provider=self.name,
            provider_payment_id=request.order_id,
            status=StatusOutcome.PROCESSING,
            redirect_url=hosted_page,
            raw=sanitize(data),
        )

    async def fetch_remote_status(self, provider_payment_id: str) -> ProviderStatus:
        data = await self._make_request("GET", f"{API_PREFIX}/orders/{provider_payment_id}")
        raw_status = self._last_result(data.get("operations") or [])
        order = (data.get("orderStatus") or {}).get("order") or {}
        amount = order.get("amount")
        return ProviderStatus(
            provider=self.name,
            provider_payment_id=provider_payment_id,
            raw_status=raw_status,
            outcome=self.map_status(raw_status),
            order_id=order.get("orderId", provider_payment_id),
            amount=int(amount) if amount is not None else None,
            raw=sanitize(data),
        )

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        payload = load_json(self.name, body)
        operation = payload.get("operation") or {}
        order_id = operation.get("orderId")
        event_id = payload.get("eventId") or operation.get("operationId")
        if not order_id or not event_id:
            raise WebhookParseError("Nexi notification without order or event id")

        raw_status = operation.get("operationResult")
        operation_type = operation.get("operationType", "AUTHORIZATION")
        if operation_type in ("AUTHORIZATION", "CAPTURE"):
            outcome = self.map_status(raw_status)
        else:
            outcome = StatusOutcome.NO_OP
        return WebhookEvent(
            provider=self.name,
            event_id=event_id,
            event_type=operation_type,
            provider_payment_id=order_id,
            order_id=order_id,
            raw_status=raw_status,
            outcome=outcome,
        )
