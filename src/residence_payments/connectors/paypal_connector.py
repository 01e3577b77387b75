"""PayPal Orders v2 connector (approve, then capture)."""

import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import ProviderAuthError, ProviderError, ProviderUnreachableError, WebhookParseError
from .base import (
    ProviderPaymentHandle,
    ProviderStatus,
    RemotePaymentRequest,
    StatusOutcome,
    WebhookEvent,
    load_json,
    normalize_headers,
    sanitize,
)
from .http import HttpConnector

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
PRODUCTION_URL = "https://api-m.paypal.com"

TRANSMISSION_HEADERS = (
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
)


def format_value(minor_units: int) -> str:
    return f"{minor_units // 100}.{minor_units % 100:02d}"


def parse_value(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    units, _, cents = value.partition(".")
    return int(units) * 100 + int((cents + "00")[:2])


class PayPalConnector(HttpConnector):
    name = "paypal"

    # Order.status vocabulary
    status_map = {
        "CREATED": StatusOutcome.PROCESSING,
        "SAVED": StatusOutcome.PROCESSING,
        "APPROVED": StatusOutcome.PROCESSING,
        "PAYER_ACTION_REQUIRED": StatusOutcome.PROCESSING,
        "COMPLETED": StatusOutcome.COMPLETED,
        "VOIDED": StatusOutcome.FAILED,
    }

    event_map = {
        "CHECKOUT.ORDER.COMPLETED": StatusOutcome.COMPLETED,
        "PAYMENT.CAPTURE.COMPLETED": StatusOutcome.COMPLETED,
        "PAYMENT.CAPTURE.DENIED": StatusOutcome.FAILED,
        "PAYMENT.CAPTURE.DECLINED": StatusOutcome.FAILED,
        "CHECKOUT.ORDER.VOIDED": StatusOutcome.FAILED,
        "CHECKOUT.ORDER.APPROVED": StatusOutcome.PROCESSING,
        "PAYMENT.CAPTURE.PENDING": StatusOutcome.PROCESSING,
    }

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: Optional[str] = None,
        production: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not client_id or not client_secret:
            raise ValueError("PayPal client_id and client_secret are required")
        super().__init__(
            PRODUCTION_URL if production else SANDBOX_URL,
            http_client=http_client,
            webhook_secret=webhook_id,
            production=production,
        )
        self.client_id = client_id
        self.client_secret = client_secret

        # Access token cache
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    async def _get_access_token(self) -> str:
        """Get an OAuth access token, reusing the cached one until it expires."""
        now = datetime.now(timezone.utc)
        if self._access_token and self._token_expires_at and now < self._token_expires_at:
            return self._access_token

        credentials = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
        try:
            response = await self.http_client.post(
                f"{self.base_url}/v1/oauth2/token",
                headers={
                    "Authorization": f"Basic {credentials}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                content=b"grant_type=client_credentials",
            )
        except httpx.HTTPError as e:
            raise ProviderUnreachableError("paypal is unreachable", provider=self.name) from e

        if response.status_code != 200:
            logger.error(f"Failed to get PayPal access token: {response.status_code}")
            raise ProviderAuthError(
                "PayPal rejected the client credentials",
                provider=self.name,
                provider_status_code=response.status_code,
            )

        data = response.json()
        self._access_token = data["access_token"]
        # refresh a minute early
        expires_in = int(data.get("expires_in", 3600)) - 60
        self._token_expires_at = now + timedelta(seconds=max(expires_in, 0))
        return self._access_token

    async def _auth_headers(self, method: str, path: str, body: bytes) -> Dict[str, str]:
        token = await self._get_access_token()
        return {"Authorization": f"Bearer {token}", "Prefer": "return=representation"}

    def _to_status(self, data: Dict[str, Any]) -> ProviderStatus:
        raw_status = data.get("status")
        units = data.get("purchase_units") or [{}]
        first_unit = units[0] if units else {}
        return ProviderStatus(
            provider=self.name,
            provider_payment_id=data.get("id", ""),
            raw_status=raw_status,
            outcome=self.map_status(raw_status),
            order_id=first_unit.get("custom_id") or first_unit.get("reference_id"),
            amount=parse_value((first_unit.get("amount") or {}).get("value")),
            raw=sanitize(data),
        )

    async def create_remote_payment(self, request: RemotePaymentRequest) -> ProviderPaymentHandle:
        order_data: Dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": request.order_id,
                    "custom_id": request.order_id,
                    "description": request.description,
                    "amount": {
                        "currency_code": request.currency.upper(),
                        "value": format_value(request.amount),
                    },
                }
            ],
        }
        if request.return_url:
            order_data["application_context"] = {
                "return_url": request.return_url,
                "cancel_url": request.return_url,
                "user_action": "PAY_NOW",
            }

        data = await self._make_request(
            "POST",
            "/v2/checkout/orders",
            order_data,
            extra_headers={"PayPal-Request-Id": request.order_id},
        )
        paypal_order_id = data.get("id")
        if not paypal_order_id:
            raise ProviderError("PayPal response without order id", provider=self.name)

        approval_url = None
        for link in data.get("links", []):
            if link.get("rel") in ("approve", "payer-action"):
                approval_url = link.get("href")
                break

        logger.info(f"Created PayPal order {paypal_order_id} for order {request.order_id}")
        return ProviderPaymentHandle(
            provider=self.name,
            provider_payment_id=paypal_order_id,
            status=self.map_status(data.get("status")),
            redirect_url=approval_url,
            raw=sanitize(data),
        )

    async def fetch_remote_status(self, provider_payment_id: str) -> ProviderStatus:
        data = await self._make_request("GET", f"/v2/checkout/orders/{provider_payment_id}")
        return self._to_status(data)

    async def capture(self, provider_payment_id: str) -> ProviderStatus:
        """Capture an approved order. Already captured orders are reported as they are."""
        current = await self.fetch_remote_status(provider_payment_id)
        if current.raw_status != "APPROVED":
            return current
        data = await self._make_request(
            "POST",
            f"/v2/checkout/orders/{provider_payment_id}/capture",
            {},
            extra_headers={"PayPal-Request-Id": f"capture-{provider_payment_id}"},
        )
        logger.info(f"Captured PayPal order {provider_payment_id}: {data.get('status')}")
        return self._to_status(data)

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        """Ask PayPal to verify the transmission signature of a webhook."""
        if not self.webhook_secret:
            return self.skip_unsigned()

        lowered = normalize_headers(headers)
        if any(not lowered.get(h) for h in TRANSMISSION_HEADERS):
            logger.warning("PayPal webhook missing transmission headers")
            return False

        payload = {
            "auth_algo": lowered["paypal-auth-algo"],
            "cert_url": lowered["paypal-cert-url"],
            "transmission_id": lowered["paypal-transmission-id"],
            "transmission_sig": lowered["paypal-transmission-sig"],
            "transmission_time": lowered["paypal-transmission-time"],
            "webhook_id": self.webhook_secret,
            "webhook_event": load_json(self.name, raw_body),
        }
        result = await self._make_request("POST", "/v1/notifications/verify-webhook-signature", payload)
        return result.get("verification_status") == "SUCCESS"

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        payload = load_json(self.name, body)
        event_type = payload.get("event_type")
        event_id = payload.get("id")
        if not event_type or not event_id:
            raise WebhookParseError("PayPal event without id or event_type")

        resource = payload.get("resource") or {}
        if event_type.startswith("PAYMENT.CAPTURE."):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            paypal_order_id = related.get("order_id")
            order_id = resource.get("custom_id")
        else:
            paypal_order_id = resource.get("id")
            units = resource.get("purchase_units") or [{}]
            order_id = (units[0] if units else {}).get("custom_id")

        return WebhookEvent(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            provider_payment_id=paypal_order_id,
            order_id=order_id,
            raw_status=resource.get("status"),
            outcome=self.event_map.get(event_type, StatusOutcome.NO_OP),
        )
