import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from ..errors import (
    ProviderAuthError,
    ProviderError,
    ProviderNotFoundError,
    ProviderUnreachableError,
    WebhookParseError,
)
from .base import (
    ConnectorBase,
    ProviderPaymentHandle,
    ProviderStatus,
    RemotePaymentRequest,
    StatusOutcome,
    WebhookEvent,
    load_json,
    normalize_headers,
    sanitize,
)

logger = logging.getLogger(__name__)


class StripeConnector(ConnectorBase):
    """
    Stripe connector using PaymentIntents with automatic payment methods.
    The browser confirms the intent with Stripe.js using the returned
    client secret; the order is settled by webhook, polling or sweep.
    """

    name = "stripe"

    # PaymentIntent.status vocabulary
    status_map = {
        "succeeded": StatusOutcome.COMPLETED,
        "canceled": StatusOutcome.FAILED,
        "processing": StatusOutcome.PROCESSING,
        "requires_action": StatusOutcome.PROCESSING,
        "requires_confirmation": StatusOutcome.PROCESSING,
        "requires_capture": StatusOutcome.PROCESSING,
        "requires_payment_method": StatusOutcome.PROCESSING,
    }

    # Event.type vocabulary
    event_map = {
        "payment_intent.succeeded": StatusOutcome.COMPLETED,
        "payment_intent.payment_failed": StatusOutcome.FAILED,
        "payment_intent.canceled": StatusOutcome.FAILED,
        "payment_intent.processing": StatusOutcome.PROCESSING,
        "payment_intent.requires_action": StatusOutcome.PROCESSING,
    }

    def __init__(self, api_key: str, webhook_secret: Optional[str] = None, production: bool = False):
        super().__init__(webhook_secret=webhook_secret, production=production)
        if not api_key:
            raise ValueError("STRIPE_API_KEY is required for StripeConnector")
        self._api_key = api_key

    def _translate_error(self, e: stripe.StripeError) -> ProviderError:
        message = getattr(e, "user_message", None) or "Stripe request failed"
        status = getattr(e, "http_status", None)
        if isinstance(e, stripe.AuthenticationError) or isinstance(e, stripe.PermissionError):
            return ProviderAuthError(message, provider=self.name, provider_status_code=status)
        if isinstance(e, stripe.InvalidRequestError) and getattr(e, "code", None) == "resource_missing":
            return ProviderNotFoundError(message, provider=self.name, provider_status_code=status)
        if isinstance(e, (stripe.APIConnectionError, stripe.RateLimitError)):
            return ProviderUnreachableError(message, provider=self.name, provider_status_code=status)
        if status is not None and status >= 500:
            return ProviderUnreachableError(message, provider=self.name, provider_status_code=status)
        return ProviderError(message, provider=self.name, provider_status_code=status)

    def _intent_outcome(self, status: Optional[str], last_payment_error: Any) -> StatusOutcome:
        # requires_payment_method is also the initial state; it only means
        # failure once an attempt has been made
        if status == "requires_payment_method" and last_payment_error:
            return StatusOutcome.FAILED
        return self.map_status(status)

    async def create_remote_payment(self, request: RemotePaymentRequest) -> ProviderPaymentHandle:
        metadata = {
            "order_id": request.order_id,
            "sigla": request.sigla,
            "customer_name": request.customer_name,
            "service_ids": ",".join(str(i) for i in request.service_ids),
        }
        params: Dict[str, Any] = {
            "amount": request.amount,
            "currency": request.currency.lower(),
            "description": request.description,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if request.customer_email:
            params["receipt_email"] = request.customer_email

        try:
            pi = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                api_key=self._api_key,
                idempotency_key=request.order_id,
                **params,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent creation failed for {request.order_id}: {e}")
            raise self._translate_error(e) from e

        logger.info(f"Created PaymentIntent {pi.id} for order {request.order_id}")
        return ProviderPaymentHandle(
            provider=self.name,
            provider_payment_id=pi.id,
            status=StatusOutcome.PROCESSING,
            client_secret=pi.client_secret,
            raw=sanitize(pi.to_dict()),
        )

    async def fetch_remote_status(self, provider_payment_id: str) -> ProviderStatus:
        try:
            pi = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve, provider_payment_id, api_key=self._api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent retrieve failed for {provider_payment_id}: {e}")
            raise self._translate_error(e) from e

        data = pi.to_dict()
        metadata = data.get("metadata") or {}
        return ProviderStatus(
            provider=self.name,
            provider_payment_id=pi.id,
            raw_status=pi.status,
            outcome=self._intent_outcome(pi.status, data.get("last_payment_error")),
            order_id=metadata.get("order_id"),
            amount=data.get("amount"),
            raw=sanitize(data),
        )

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return self.skip_unsigned()
        sig_header = normalize_headers(headers).get("stripe-signature", "")
        try:
            stripe.Webhook.construct_event(payload=raw_body, sig_header=sig_header, secret=self.webhook_secret)
        except stripe.SignatureVerificationError:
            logger.warning("Invalid Stripe webhook signature")
            return False
        except ValueError as e:
            raise WebhookParseError("Invalid Stripe webhook payload") from e
        return True

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        payload = load_json(self.name, body)
        event_type = payload.get("type")
        event_id = payload.get("id")
        if not event_type or not event_id:
            raise WebhookParseError("Stripe event without id or type")

        obj = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        return WebhookEvent(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            provider_payment_id=obj.get("id"),
            order_id=metadata.get("order_id"),
            raw_status=obj.get("status"),
            outcome=self.event_map.get(event_type, StatusOutcome.NO_OP),
        )
