"""Checkout service: order creation with a server-computed amount."""

import logging
import time
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field

from .config import Settings
from .connectors.base import ConnectorBase, RemotePaymentRequest
from .database.models import (
    PaymentMethod,
    OrderStatus,
    ServiceStatus,
    StatusSource,
    format_amount,
    utcnow,
)
from .errors import (
    InvalidAmountError,
    PaymentInProgressError,
    ProviderError,
    ServiceNotFoundError,
    ValidationError,
)
from .storage import LedgerStorage, NewPayment, ServiceFilter

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "Servizio Segreteria ELIS - Pagamento"

# Allowed gap between a client-displayed total and the server total, minor units
AMOUNT_TOLERANCE = 1


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CreateOrderRequest(BaseModel):
    sigla: str = Field(..., min_length=1, max_length=50)
    customer_name: str = Field(default="", max_length=255)
    customer_email: Optional[str] = None
    payment_method: PaymentMethod
    # Total the client believes it is paying, in EUR. Checked, never trusted.
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    return_url: Optional[str] = None


class CheckoutResult(BaseModel):
    order_id: str
    sigla: str
    amount: Decimal
    currency: str
    status: str
    payment_method: str
    provider_payment_id: str
    service_ids: List[int]
    client_secret: Optional[str] = None
    redirect_url: Optional[str] = None
    qr_code: Optional[str] = None
    simulated: bool = False


class PendingServices(BaseModel):
    sigla: str
    services: List[Dict[str, Any]]
    total: Decimal
    count: int


class CheckoutService:
    """Creates payment orders for the unpaid services of a student."""

    def __init__(
        self,
        storage: LedgerStorage,
        connectors: Dict[str, ConnectorBase],
        settings: Settings,
    ):
        self.storage = storage
        self.connectors = connectors
        self.settings = settings

    def _connector(self, payment_method: str) -> ConnectorBase:
        connector = self.connectors.get(payment_method)
        if connector is None:
            raise ValidationError(f"Payment method '{payment_method}' is not supported")
        if connector.simulated and self.settings.is_production:
            logger.error(f"{payment_method} has no credentials configured; refusing checkout in production")
            raise ValidationError(f"Payment method '{payment_method}' is not available")
        return connector

    async def _check_open_orders(self, sigla: str, service_ids: List[int]) -> None:
        """Refuse a second order while a recent open one covers the same items.

        Open orders older than the sweep grace period no longer block a new
        checkout; if both end up paid, settlement flags the duplicate.
        """
        cutoff = utcnow() - timedelta(minutes=self.settings.sweep_grace_minutes)
        open_orders = await self.storage.get_payments_for_sigla(
            sigla, (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)
        )
        for order in open_orders:
            overlap = sorted(set(order.service_ids) & set(service_ids))
            if overlap and order.created_at >= cutoff:
                logger.warning(
                    f"Checkout for sigla {sigla} refused: order {order.order_id} "
                    f"already covers services {overlap}"
                )
                raise PaymentInProgressError(
                    "A payment for these services is already in progress",
                    {"order_id": order.order_id, "service_ids": overlap},
                )

    def _generate_order_id(self, payment_method: str, sigla: str) -> str:
        return f"{payment_method.upper()}_{sigla}_{int(time.time() * 1000)}"

    async def list_pending_services(self, sigla: str) -> PendingServices:
        """Unpaid services of a student with their total."""
        page = await self.storage.get_services(
            ServiceFilter(sigla=sigla, status=ServiceStatus.UNPAID.value)
        )
        total = sum(item.amount for item in page.items)
        return PendingServices(
            sigla=sigla,
            services=[item.to_dict() for item in page.items],
            total=format_amount(total),
            count=len(page.items),
        )

    async def create_order(self, request: CreateOrderRequest) -> CheckoutResult:
        """Create an order covering every unpaid service of the sigla.

        Args:
            request: Checkout request from the client.

        Returns:
            CheckoutResult with what the client needs to complete payment.

        Raises:
            ValidationError: Unsupported gateway or nothing to pay.
            InvalidAmountError: Client total mismatch or total out of bounds.
            PaymentInProgressError: A recent open order covers the same services.
            ProviderError: The gateway refused to create the payment.
        """
        payment_method = request.payment_method.value
        connector = self._connector(payment_method)

        page = await self.storage.get_services(
            ServiceFilter(sigla=request.sigla, status=ServiceStatus.UNPAID.value)
        )
        if not page.items:
            raise ValidationError(
                f"No unpaid services found for sigla {request.sigla}",
                {"sigla": request.sigla},
            )

        amount = sum(item.amount for item in page.items)
        service_ids = [item.id for item in page.items]

        if request.amount is not None:
            requested = to_minor_units(request.amount)
            if abs(requested - amount) > AMOUNT_TOLERANCE:
                logger.warning(
                    f"Amount mismatch for sigla {request.sigla}: "
                    f"requested {requested}, expected {amount}"
                )
                raise InvalidAmountError(
                    "Amount does not match the unpaid services",
                    {
                        "expected_amount": str(format_amount(amount)),
                        "requested_amount": str(format_amount(requested)),
                    },
                )

        if amount < self.settings.min_order_amount or amount > self.settings.max_order_amount:
            raise InvalidAmountError(
                f"Order total must be between {format_amount(self.settings.min_order_amount)} "
                f"and {format_amount(self.settings.max_order_amount)} {self.settings.currency}",
                {"amount": str(format_amount(amount))},
            )

        await self._check_open_orders(request.sigla, service_ids)

        order_id =self._generate_order_id(payment_method, request.sigla)
        order = await self.storage.create_payment(
            NewPayment(
                order_id=order_id,
                sigla=request.sigla,
                amount=amount,
                currency=self.settings.currency,
                payment_method=payment_method,
                customer_name=request.customer_name,
                customer_email=request.customer_email,
                metadata={"service_ids": service_ids},
            )
        )

        base_url = self.settings.public_base_url.rstrip("/")
        remote_request = RemotePaymentRequest(
            order_id=order_id,
            amount=amount,
            currency=order.currency,
            description=request.description or DEFAULT_DESCRIPTION,
            sigla=request.sigla,
            service_ids=service_ids,
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            return_url=request.return_url,
            callback_url=f"{base_url}/webhooks/{payment_method}",
        )

        try:
            handle = await connector.create_remote_payment(remote_request)
        except ProviderError as e:
            logger.error(f"Payment creation failed for order {order_id}: {e.message}")
            await self.storage.update_payment_status(
                order_id,
                OrderStatus.FAILED.value,
                source=StatusSource.CHECKOUT.value,
                detail=e.message,
            )
            raise

        await self.storage.set_provider_reference(
            order_id,
            handle.provider_payment_id,
            {
                "redirect_url": handle.redirect_url,
                "qr_code": handle.qr_code,
                "simulated": handle.simulated,
            },
        )
        status = OrderStatus.PROCESSING.value
        moved = await self.storage.update_payment_status(
            order_id,
            OrderStatus.PROCESSING.value,
            source=StatusSource.CHECKOUT.value,
        )
        if not moved:
            # A fast webhook may already have settled or failed the order
            stored = await self.storage.get_payment_by_order_id(order_id)
            if stored is not None:
                status = stored.status
                logger.info(f"Order {order_id} already {status} before checkout returned")

        logger.info(
            f"Order {order_id} created for sigla {request.sigla}: "
            f"{format_amount(amount)} {order.currency} via {payment_method}"
        )
        return CheckoutResult(
            order_id=order_id,
            sigla=request.sigla,
            amount=format_amount(amount),
            currency=order.currency,
            status=status,
            payment_method=payment_method,
            provider_payment_id=handle.provider_payment_id,
            service_ids=service_ids,
            client_secret=handle.client_secret,
            redirect_url=handle.redirect_url,
            qr_code=handle.qr_code,
            simulated=handle.simulated,
        )

    async def mark_service_paid(self, service_id: int) -> Dict[str, Any]:
        """Manually mark one service as paid (staff action)."""
        item = await self.storage.update_service(service_id, {"status": ServiceStatus.PAID.value})
        if item is None:
            raise ServiceNotFoundError(service_id)
        logger.info(f"Service {service_id} manually marked as paid")
        return item.to_dict()
