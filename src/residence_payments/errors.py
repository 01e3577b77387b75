"""Exception hierarchy for payment settlement.

Every error carries a human-readable message, an HTTP-style status code and
an optional details dict. The route layer turns them into JSON responses;
the reconciliation engine catches the provider family and keeps going.
"""

from typing import Any, Dict, Iterable, Optional


class PaymentsError(Exception):
    """Base class for all payment errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"detail": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(PaymentsError):
    """Bad or missing request fields. Raised before any state change."""

    status_code = 400


class InvalidAmountError(ValidationError):
    """Amount outside the accepted bounds or not matching the unpaid services."""


class PaymentInProgressError(ValidationError):
    """Another open order already covers these services."""

    status_code = 409


class WebhookParseError(ValidationError):
    """Webhook body could not be understood."""


class NotFoundError(PaymentsError):
    status_code = 404


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", {"order_id": order_id})
        self.order_id = order_id


class ServiceNotFoundError(NotFoundError):
    def __init__(self, service_id: int):
        super().__init__(f"Service {service_id} not found", {"service_id": service_id})
        self.service_id = service_id


class ProviderError(PaymentsError):
    """The external gateway answered with an error or could not be reached."""

    status_code = 502

    def __init__(
        self,
        message: str,
        provider: str,
        provider_status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.provider_status_code = provider_status_code


class ProviderUnreachableError(ProviderError):
    """Network failure or 5xx. The sweep retries later."""


class ProviderAuthError(ProviderError):
    """Credentials rejected by the gateway."""


class ProviderNotFoundError(ProviderError):
    """Gateway does not know the payment (yet). Transient, never terminal."""


class SignatureError(PaymentsError):
    """Webhook authentication failed. No state is changed."""

    status_code = 400


class PartialSettlementError(PaymentsError):
    """Some service items could not be marked paid during settlement."""

    def __init__(self, order_id: str, failed_service_ids: Iterable[int]):
        failed = list(failed_service_ids)
        super().__init__(
            f"Order {order_id} settled with {len(failed)} service item(s) not updated",
            {"order_id": order_id, "failed_service_ids": failed},
        )
        self.order_id = order_id
        self.failed_service_ids = failed


class PollingTimeoutError(PaymentsError):
    """Client polling gave up waiting. The payment itself may still complete."""

    status_code = 504

    def __init__(self, order_id: str, timeout_seconds: float):
        super().__init__(
            "Payment confirmation is taking longer than expected. "
            "Please check again later; the payment has not been marked as failed.",
            {"order_id": order_id, "timeout_seconds": timeout_seconds},
        )
        self.order_id = order_id
