"""SQLAlchemy implementation of the ledger storage interface."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError

from ..storage import LedgerStorage, NewPayment, ServiceFilter, ServicePage
from .models import OrderStatusHistory, PaymentOrder, ServiceLineItem
from .repository import (
    PaymentOrderRepository,
    ServiceRepository,
    StatusHistoryRepository,
    WebhookEventRepository,
)
from .session import DatabaseManager

logger = logging.getLogger(__name__)


class SqlLedgerStorage(LedgerStorage):
    """Each call runs in its own short transaction.

    Settlement updates every service item separately, so one failed row
    cannot roll back the ones already marked paid.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get_services(self, service_filter: ServiceFilter) -> ServicePage:
        async with self.db.session() as session:
            items, total = await ServiceRepository(session).find(
                sigla=service_filter.sigla,
                status=service_filter.status,
                ids=service_filter.ids,
                limit=service_filter.limit,
                offset=service_filter.offset,
            )
            return ServicePage(items=items, total=total)

    async def update_service(self, service_id: int, patch: Dict[str, Any]) -> Optional[ServiceLineItem]:
        async with self.db.session() as session:
            return await ServiceRepository(session).update(service_id, patch)

    async def get_payment_by_order_id(self, order_id: str) -> Optional[PaymentOrder]:
        async with self.db.session() as session:
            return await PaymentOrderRepository(session).get_by_order_id(order_id)

    async def get_payment_by_provider_id(
        self, payment_method: str, provider_payment_id: str
    ) -> Optional[PaymentOrder]:
        async with self.db.session() as session:
            return await PaymentOrderRepository(session).get_by_provider_payment_id(
                payment_method, provider_payment_id
            )

    async def create_payment(self, data: NewPayment) -> PaymentOrder:
        async with self.db.session() as session:
            order = await PaymentOrderRepository(session).create(
                order_id=data.order_id,
                sigla=data.sigla,
                amount=data.amount,
                currency=data.currency,
                payment_method=data.payment_method,
                customer_name=data.customer_name,
                customer_email=data.customer_email,
                metadata=data.metadata,
            )
            await StatusHistoryRepository(session).create(
                order_id=order.order_id,
                new_status=order.status,
                source="checkout",
            )
            return order

    async def update_payment_status(
        self,
        order_id: str,
        status: str,
        completed_at: Optional[datetime] = None,
        source: str = "manual",
        provider_status: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> bool:
        async with self.db.session() as session:
            previous = await PaymentOrderRepository(session).transition_status(
                order_id, status, completed_at=completed_at
            )
            if previous is None:
                return False
            await StatusHistoryRepository(session).create(
                order_id=order_id,
                previous_status=previous,
                new_status=status,
                source=source,
                provider_status=provider_status,
                detail=detail,
            )
            return True

    async def set_provider_reference(
        self,
        order_id: str,
        provider_payment_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentOrder]:
        async with self.db.session() as session:
            return await PaymentOrderRepository(session).set_provider_reference(
                order_id, provider_payment_id, metadata
            )

    async def get_payments_by_status(
        self, status: str, created_before: Optional[datetime] = None
    ) -> List[PaymentOrder]:
        async with self.db.session() as session:
            orders = await PaymentOrderRepository(session).list_by_status(status, created_before)
            return list(orders)

    async def get_payments_for_sigla(
        self, sigla: str, statuses: Sequence[str]
    ) -> List[PaymentOrder]:
        async with self.db.session() as session:
            orders = await PaymentOrderRepository(session).list_for_sigla(sigla, statuses)
            return list(orders)

    async def get_payments_created_between(
        self, start_time: datetime, end_time: datetime
    ) -> List[PaymentOrder]:
        async with self.db.session() as session:
            orders = await PaymentOrderRepository(session).list_created_between(start_time, end_time)
            return list(orders)

    async def get_status_history(self, order_id: str) -> Sequence[OrderStatusHistory]:
        async with self.db.session() as session:
            return await StatusHistoryRepository(session).get_by_order_id(order_id)

    async def has_processed_event(self, provider: str, event_id: str) -> bool:
        async with self.db.session() as session:
            return await WebhookEventRepository(session).exists(provider, event_id)

    async def record_event(
        self,
        provider: str,
        event_id: str,
        event_type: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> bool:
        try:
            async with self.db.session() as session:
                await WebhookEventRepository(session).create(provider, event_id, event_type, order_id)
        except IntegrityError:
            logger.info(f"Webhook event {provider}/{event_id} already recorded")
            return False
        return True
