"""Simulator connector used when a gateway has no credentials configured."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from ..errors import ProviderNotFoundError, ProviderUnreachableError, WebhookParseError
from .base import (
    ConnectorBase,
    ProviderPaymentHandle,
    ProviderStatus,
    RemotePaymentRequest,
    StatusOutcome,
    WebhookEvent,
    load_json,
    normalize_headers,
)
from .signing import verify_hmac_signature

logger = logging.getLogger(__name__)


class SimulatedStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


@dataclass
class SimulatedPayment:
    """In-memory representation of a simulated payment."""
    id: str
    order_id: str
    amount: int
    currency: str
    status: SimulatedStatus = SimulatedStatus.PENDING
    created_at: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    auto_accept_seconds: Optional[float] = 10.0  # None disables auto-accept
    unreachable: bool = False  # every call raises ProviderUnreachableError


class SimulatorConnector(ConnectorBase):
    """
    Stand-in for a real gateway.

    Features:
    - In-memory payment storage
    - Payments accepted automatically after a configurable delay
    - Explicit accept/decline helpers for tests and operators
    - Every handle and status is flagged as simulated
    """

    status_map = {
        SimulatedStatus.PENDING.value: StatusOutcome.PROCESSING,
        SimulatedStatus.ACCEPTED.value: StatusOutcome.COMPLETED,
        SimulatedStatus.DECLINED.value: StatusOutcome.FAILED,
    }

    def __init__(
        self,
        provider: str,
        config: Optional[SimulatorConfig] = None,
        webhook_secret: Optional[str] = None,
        production: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(webhook_secret=webhook_secret, production=production)
        self.name = provider
        self.config = config or SimulatorConfig()
        self._clock = clock
        self._payments: Dict[str, SimulatedPayment] = {}
        logger.warning(f"{provider} credentials not configured: running in SIMULATION mode")

    @property
    def simulated(self) -> bool:
        return True

    def _generate_id(self) -> str:
        return f"{self.name}_sim_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"

    def _check_reachable(self) -> None:
        if self.config.unreachable:
            raise ProviderUnreachableError(f"Simulated {self.name} outage", provider=self.name)

    def _refresh(self, payment: SimulatedPayment) -> None:
        delay = self.config.auto_accept_seconds
        if (
            payment.status == SimulatedStatus.PENDING
            and delay is not None
            and self._clock() - payment.created_at >= delay
        ):
            payment.status = SimulatedStatus.ACCEPTED
            logger.info(f"Simulated {self.name} payment {payment.id} auto-accepted")

    async def create_remote_payment(self, request: RemotePaymentRequest) -> ProviderPaymentHandle:
        self._check_reachable()
        payment = SimulatedPayment(
            id=self._generate_id(),
            order_id=request.order_id,
            amount=request.amount,
            currency=request.currency,
            created_at=self._clock(),
            metadata={"sigla": request.sigla, "service_ids": request.service_ids},
        )
        self._payments[payment.id] = payment
        logger.info(f"Created simulated {self.name} payment {payment.id} for order {request.order_id}")

        return ProviderPaymentHandle(
            provider=self.name,
            provider_payment_id=payment.id,
            status=StatusOutcome.PROCESSING,
            redirect_url=request.return_url,
            qr_code=f"{self.name}://simulated/{payment.id}",
            client_secret=f"{payment.id}_secret_simulated" if self.name == "stripe" else None,
            simulated=True,
            raw={"simulator": True, "status": payment.status.value},
        )

    async def fetch_remote_status(self, provider_payment_id: str) -> ProviderStatus:
        self._check_reachable()
        payment = self._payments.get(provider_payment_id)
        if payment is None:
            raise ProviderNotFoundError(
                f"Simulated {self.name} payment {provider_payment_id} not found", provider=self.name
            )
        self._refresh(payment)
        return ProviderStatus(
            provider=self.name,
            provider_payment_id=payment.id,
            raw_status=payment.status.value,
            outcome=self.map_status(payment.status.value),
            order_id=payment.order_id,
            amount=payment.amount,
            raw={"simulator": True, "status": payment.status.value},
        )

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.webhook_secret:
            return self.skip_unsigned()
        lowered = normalize_headers(headers)
        return verify_hmac_signature(
            self.webhook_secret,
            lowered.get("x-signature"),
            lowered.get("x-timestamp"),
            "POST",
            f"/webhooks/{self.name}",
            raw_body,
        )

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookEvent:
        """Parse a simulated notification: ``{"id", "payment_id", "status"}``."""
        payload = load_json(self.name, body)
        payment_id = payload.get("payment_id")
        if not payment_id:
            raise WebhookParseError(f"Simulated {self.name} webhook without payment_id")

        raw_status = payload.get("status")
        payment = self._payments.get(payment_id)
        return WebhookEvent(
            provider=self.name,
            event_id=payload.get("id") or f"{payment_id}:{raw_status}",
            event_type="simulated.payment",
            provider_payment_id=payment_id,
            order_id=payload.get("order_id") or (payment.order_id if payment else None),
            raw_status=raw_status,
            outcome=self.map_status(raw_status),
            needs_lookup=raw_status is None,
        )

    def accept(self, provider_payment_id: str) -> SimulatedPayment:
        """Mark a simulated payment as paid (simulator-specific method)."""
        payment = self._payments[provider_payment_id]
        if payment.status == SimulatedStatus.PENDING:
            payment.status = SimulatedStatus.ACCEPTED
        return payment

    def decline(self, provider_payment_id: str) -> SimulatedPayment:
        """Mark a simulated payment as declined (simulator-specific method)."""
        payment = self._payments[provider_payment_id]
        if payment.status == SimulatedStatus.PENDING:
            payment.status = SimulatedStatus.DECLINED
        return payment

    def get_payment(self, provider_payment_id: str) -> Optional[SimulatedPayment]:
        return self._payments.get(provider_payment_id)

    def clear_payments(self) -> None:
        """Clear all stored payments (for test cleanup)."""
        self._payments.clear()

    def health_check(self) -> Dict[str, Any]:
        return {
            "ok": not self.config.unreachable,
            "provider": self.name,
            "simulated": True,
            "payment_count": len(self._payments),
            "auto_accept_seconds": self.config.auto_accept_seconds,
        }
