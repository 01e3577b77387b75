"""Storage interface consumed by checkout and reconciliation.

The engine never issues queries itself; everything goes through a
``LedgerStorage`` implementation. ``database.ledger.SqlLedgerStorage`` is the
production one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from .database.models import OrderStatusHistory, PaymentOrder, ServiceLineItem


@dataclass
class ServiceFilter:
    """Filter for service line item lookups."""
    sigla: Optional[str] = None
    status: Optional[str] = None
    ids: Optional[List[int]] = None
    limit: Optional[int] = None
    offset: int = 0


@dataclass
class ServicePage:
    items: List[ServiceLineItem] = field(default_factory=list)
    total: int = 0


@dataclass
class NewPayment:
    """Data needed to persist a new payment order."""
    order_id: str
    sigla: str
    amount: int
    currency: str
    payment_method: str
    customer_name: str = ""
    customer_email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class LedgerStorage(ABC):
    """Payment record store and service ledger."""

    @abstractmethod
    async def get_services(self, service_filter: ServiceFilter) -> ServicePage:
        raise NotImplementedError

    @abstractmethod
    async def update_service(self, service_id: int, patch: Dict[str, Any]) -> Optional[ServiceLineItem]:
        """Apply ``patch`` to one item. Returns None if the item does not exist."""
        raise NotImplementedError

    @abstractmethod
    async def get_payment_by_order_id(self, order_id: str) -> Optional[PaymentOrder]:
        raise NotImplementedError

    @abstractmethod
    async def get_payment_by_provider_id(
        self, payment_method: str, provider_payment_id: str
    ) -> Optional[PaymentOrder]:
        raise NotImplementedError

    @abstractmethod
    async def create_payment(self, data: NewPayment) -> PaymentOrder:
        raise NotImplementedError

    @abstractmethod
    async def update_payment_status(
        self,
        order_id: str,
        status: str,
        completed_at: Optional[datetime] = None,
        source: str = "manual",
        provider_status: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> bool:
        """Conditionally move an order to ``status``.

        Only forward transitions are applied. Returns True when this call
        performed the transition and False when the order was missing or
        already past that point.
        """
        raise NotImplementedError

    @abstractmethod
    async def set_provider_reference(
        self,
        order_id: str,
        provider_payment_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentOrder]:
        raise NotImplementedError

    @abstractmethod
    async def get_payments_by_status(
        self, status: str, created_before: Optional[datetime] = None
    ) -> List[PaymentOrder]:
        raise NotImplementedError

    @abstractmethod
    async def get_payments_for_sigla(
        self, sigla: str, statuses: Sequence[str]
    ) -> List[PaymentOrder]:
        raise NotImplementedError

    @abstractmethod
    async def get_payments_created_between(
        self, start_time: datetime, end_time: datetime
    ) -> List[PaymentOrder]:
        raise NotImplementedError

    @abstractmethod
    async def get_status_history(self, order_id: str) -> Sequence[OrderStatusHistory]:
        raise NotImplementedError

    @abstractmethod
    async def has_processed_event(self, provider: str, event_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def record_event(
        self,
        provider: str,
        event_id: str,
        event_type: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> bool:
        """Remember a processed webhook. Returns False if it was already recorded."""
        raise NotImplementedError
