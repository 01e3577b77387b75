"""Satispay GBusiness connector.

Outbound calls are signed with the shop's RSA key following Satispay's
HTTP signature scheme. Callbacks only carry the payment id, so webhooks are
authenticated with the shared HMAC secret and resolved by fetching the
payment.
"""

import logging
from email.utils import formatdate
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

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
from .signing import body_digest, load_private_key, rsa_sign

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://staging.authservices.satispay.com"
PRODUCTION_URL = "https://authservices.satispay.com"
PAYMENTS_PATH = "/g_business/v1/payments"


class SatispayConnector(HttpConnector):
    name = "satispay"

    status_map = {
        "ACCEPTED": StatusOutcome.COMPLETED,
        "CANCELED": StatusOutcome.FAILED,
        "EXPIRED": StatusOutcome.FAILED,
        "PENDING": StatusOutcome.PROCESSING,
    }

    def __init__(
        self,
        key_id: str,
        private_key_pem: str,
        webhook_secret: Optional[str] = None,
        production: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not key_id or not private_key_pem:
            raise ValueError("Satispay key_id and private key are required")
        super().__init__(
            PRODUCTION_URL if production else SANDBOX_URL,
            http_client=http_client,
            webhook_secret=webhook_secret,
            production=production,
        )
        self.key_id = key_id
        self._private_key = load_private_key(private_key_pem)

    def signing_string(self, method: str, path: str, host: str, date: str, digest: str) -> str:
        return "\n".join([
            f"(request-target): {method.lower()} {path}",
            f"host: {host}",
            f"date: {date}",
            f"digest: {digest}",
        ])

    async def _auth_headers(self, method: str, path: str, body: bytes) -> Dict[str, str]:
        host = urlparse(self.base_url).netloc
        date = formatdate(usegmt=True)
        digest = body_digest(body)
        signature = rsa_sign(self._private_key, self.signing_string(method, path, host, date, digest))
        authorization = (
            f'Signature keyId="{self.key_id}", algorithm="rsa-sha256", '
            f'headers="(request-target) host date digest", signature="{signature}"'
        )
        return {"Host": host, "Date": date, "Digest": digest, "Authorization": authorization}

    def _to_status(self, data: Dict[str, Any]) -> ProviderStatus:
        raw_status = data.get("status")
        return ProviderStatus(
            provider=self.name,
            provider_payment_id=data.get("id", ""),
            raw_status=raw_status,
            outcome=self.map_status(raw_status),
            order_id=data.get("external_code"),
            amount=data.get("amount_unit"),
            raw=sanitize(data),
        )

    async def create_remote_payment(self, request: RemotePaymentRequest) -> ProviderPaymentHandle:
        body: Dict[str, Any] = {
            "flow": "MATCH_CODE",
            "amount_unit": request.amount,
            "currency": request.currency.upper(),
            "external_code": request.order_id,
            "metadata": {
                "order_id": request.order_id,
                "sigla": request.sigla,
                "service_ids": ",".join(str(i) for i in request.service_ids),
            },
        }
        if request.callback_url:
            body["callback_url"] = f"{request.callback_url}?payment_id={{uuid}}"
        if request.return_url:
            body["redirect_url"] = request.return_url

        data = await self._make_request(
            "POST", PAYMENTS_PATH, body, extra_headers={"Idempotency-Key": request.order_id}
        )
        payment_id = data.get("id")
        if not payment_id:
            raise ProviderError("Satispay response without payment id", provider=self.name)

        logger.info(f"Created Satispay payment {payment_id} for order {request.order_id}")
        return ProviderPaymentHandle(
            provider=self.name,
            provider_payment_id=payment_id,
            status=self.map_status(data.get("status")),
            redirect_url=data.get("redirect_url"),
            qr_code=f"satispay://payment/{payment_id}",
            raw=sanitize(data),
        )

    async def fetch_remote_status(self, provider_payment_id: str) -> ProviderStatus:
        data = await self._make_request("GET", f"{PAYMENTS_PATH}/{provider_payment_id}")
        return self._to_status(data)

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        payload = load_json(self.name, body)
        payment_id = payload.get("payment_id") or payload.get("id")
        if not payment_id:
            raise WebhookParseError("Satispay callback without payment id")

        raw_status = payload.get("status")
        return WebhookEvent(
            provider=self.name,
            event_id=f"{payment_id}:{raw_status}" if raw_status else payment_id,
            event_type="payment.callback",
            provider_payment_id=payment_id,
            order_id=payload.get("external_code"),
            raw_status=raw_status,
            outcome=self.map_status(raw_status),
            needs_lookup=raw_status is None,
        )
