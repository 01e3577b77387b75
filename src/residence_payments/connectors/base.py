import enum
import json
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Mapping

from pydantic import BaseModel, Field

from ..errors import WebhookParseError

logger = logging.getLogger(__name__)


class StatusOutcome(str, enum.Enum):
    """What a provider status means for the local order."""
    COMPLETED = "completed"
    FAILED = "failed"
    PROCESSING = "processing"
    PENDING = "pending"
    NO_OP = "no_op"  # unknown or irrelevant, leave the order alone


# Canonical models
class RemotePaymentRequest(BaseModel):
    order_id: str
    amount: int  # minor units, already validated server-side
    currency: str = "EUR"
    description: str
    sigla: str
    service_ids: List[int] = Field(default_factory=list)
    customer_name: str = ""
    customer_email: Optional[str] = None
    return_url: Optional[str] = None
    callback_url: Optional[str] = None


class ProviderPaymentHandle(BaseModel):
    provider: str
    provider_payment_id: str
    status: StatusOutcome = StatusOutcome.PROCESSING
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    qr_code: Optional[str] = None
    simulated: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderStatus(BaseModel):
    provider: str
    provider_payment_id: str
    raw_status: Optional[str] = None
    outcome: StatusOutcome = StatusOutcome.NO_OP
    order_id: Optional[str] = None
    amount: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    provider: str
    event_id: str
    event_type: str
    provider_payment_id: Optional[str] = None
    order_id: Optional[str] = None
    raw_status: Optional[str] = None
    outcome: StatusOutcome = StatusOutcome.NO_OP
    # notification carries no status, look it up with fetch_remote_status
    needs_lookup: bool = False


# Keys never copied into stored provider responses
SENSITIVE_FIELDS = frozenset({
    "client_secret",
    "card",
    "payment_method_details",
    "access_token",
    "token",
})


def sanitize(data: Any) -> Any:
    """Drop sensitive keys from a provider response, recursively."""
    if isinstance(data, dict):
        return {k: sanitize(v) for k, v in data.items() if k not in SENSITIVE_FIELDS}
    if isinstance(data, list):
        return [sanitize(v) for v in data]
    return data


def normalize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def load_json(provider: str, body: bytes) -> Dict[str, Any]:
    """Decode a webhook body or raise WebhookParseError."""
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise WebhookParseError(f"Invalid {provider} webhook payload") from e
    if not isinstance(payload, dict):
        raise WebhookParseError(f"Invalid {provider} webhook payload")
    return payload


class ConnectorBase(ABC):
    """
    Gateway adapter interface. Implementations are side-effect free
    until a method makes a network call to the provider, and never retry
    on their own: the reconciliation sweep is the retry mechanism.
    """

    name: str = "base"
    # Provider status vocabulary to local outcome; unknown keys are NO_OP
    status_map: Dict[str, StatusOutcome] = {}

    def __init__(self, webhook_secret: Optional[str] = None, production: bool = False):
        self.webhook_secret = webhook_secret or None
        self.production = production

    @property
    def simulated(self) -> bool:
        return False

    @abstractmethod
    async def create_remote_payment(self, request: RemotePaymentRequest) -> ProviderPaymentHandle:
        """Create the payment on the provider side. The caller persists the order."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_remote_status(self, provider_payment_id: str) -> ProviderStatus:
        """Query the provider. Raises a ProviderError subclass on failure."""
        raise NotImplementedError

    @abstractmethod
    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        """
        Canonicalize an already verified webhook payload.
        Raises WebhookParseError when the body cannot be understood.
        """
        raise NotImplementedError

    async def capture(self, provider_payment_id: str) -> ProviderStatus:
        """Capture an approved payment. Most gateways capture automatically."""
        return await self.fetch_remote_status(provider_payment_id)

    def map_status(self, raw_status: Optional[str]) -> StatusOutcome:
        if raw_status is None:
            return StatusOutcome.NO_OP
        outcome = self.status_map.get(raw_status)
        if outcome is None:
            logger.warning(f"Unmapped {self.name} status '{raw_status}', leaving order unchanged")
            return StatusOutcome.NO_OP
        return outcome

    def skip_unsigned(self) -> bool:
        """Decide what to do when no webhook secret is configured.

        Returns True when verification may be skipped (non-production only)
        and False when the webhook must be rejected.
        """
        if self.production:
            logger.error(f"No webhook secret configured for {self.name}; rejecting webhook in production")
            return False
        logger.warning(f"Webhook signature verification skipped for {self.name} (development mode)")
        return True

    async def aclose(self) -> None:
        """Release network resources."""
        return None

    def health_check(self) -> Dict[str, Any]:
        return {"ok": True, "provider": self.name, "simulated": self.simulated}
