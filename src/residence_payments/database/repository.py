"""Repository layer for order, service and audit persistence."""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Sequence, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    PaymentOrder,
    ServiceLineItem,
    OrderStatusHistory,
    WebhookEvent,
    OrderStatus,
    ServiceStatus,
    ALLOWED_TRANSITIONS,
    utcnow,
)

logger = logging.getLogger(__name__)


class PaymentOrderRepository:
    """Repository for PaymentOrder operations."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        order_id: str,
        sigla: str,
        amount: int,
        currency: str,
        payment_method: str,
        customer_name: str = "",
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        status: str = OrderStatus.PENDING.value,
    ) -> PaymentOrder:
        """Create a new payment order.

        Args:
            order_id: Provider-agnostic order identifier.
            sigla: Student identifier the order pays for.
            amount: Amount in minor units.
            currency: Three-letter currency code.
            payment_method: Gateway tag.
            customer_name: Payer name.
            customer_email: Optional payer email.
            metadata: Optional metadata dictionary.
            status: Initial status.

        Returns:
            Created PaymentOrder instance.
        """
        order = PaymentOrder(
            order_id=order_id,
            sigla=sigla,
            amount=amount,
            currency=currency.upper(),
            payment_method=payment_method,
            customer_name=customer_name,
            customer_email=customer_email,
            status=status,
        )
        order.metadata_dict = metadata or {}

        self.session.add(order)
        await self.session.flush()

        logger.info(f"Created order {order_id} for sigla {sigla} with status {status}")
        return order

    async def get_by_order_id(self, order_id: str) -> Optional[PaymentOrder]:
        result = await self.session.execute(
            select(PaymentOrder).where(PaymentOrder.order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_payment_id(
        self,
        payment_method: str,
        provider_payment_id: str,
    ) -> Optional[PaymentOrder]:
        """Get an order by the gateway's payment identifier.

        Args:
            payment_method: Gateway tag.
            provider_payment_id: Gateway payment identifier.

        Returns:
            PaymentOrder instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(PaymentOrder).where(
                PaymentOrder.payment_method == payment_method,
                PaymentOrder.provider_payment_id == provider_payment_id,
            )
        )
        return result.scalars().first()

    async def transition_status(
        self,
        order_id: str,
        new_status: str,
        completed_at: Optional[datetime] = None,
    ) -> Optional[str]:
        """Move an order to a new status if its current status allows it.

        The check and the write happen in a single conditional UPDATE, so two
        concurrent callers cannot both win the same transition.

        Args:
            order_id: Order identifier.
            new_status: Target status.
            completed_at: Completion timestamp, only written with COMPLETED.

        Returns:
            The previous status when the update was applied, None otherwise.
        """
        allowed_from = ALLOWED_TRANSITIONS.get(new_status)
        if not allowed_from:
            return None

        current = await self.session.execute(
            select(PaymentOrder.status).where(PaymentOrder.order_id == order_id)
        )
        previous_status = current.scalar_one_or_none()
        if previous_status is None or previous_status not in allowed_from:
            return None

        values: Dict[str, Any] = {"status": new_status, "updated_at": utcnow()}
        if new_status == OrderStatus.COMPLETED.value:
            values["completed_at"] = completed_at or utcnow()

        result = await self.session.execute(
            update(PaymentOrder)
            .where(
                PaymentOrder.order_id == order_id,
                PaymentOrder.status == previous_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        logger.info(f"Order {order_id} moved from {previous_status} to {new_status}")
        return previous_status

    async def set_provider_reference(
        self,
        order_id: str,
        provider_payment_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymentOrder]:
        """Attach the gateway identifier and merge extra metadata."""
        order = await self.get_by_order_id(order_id)
        if order is None:
            return None
        order.provider_payment_id = provider_payment_id
        if metadata:
            merged = order.metadata_dict
            merged.update(metadata)
            order.metadata_dict = merged
        order.updated_at = utcnow()
        await self.session.flush()
        return order

    async def list_by_status(
        self,
        status: str,
        created_before: Optional[datetime] = None,
    ) -> Sequence[PaymentOrder]:
        """List orders in a status, oldest first.

        Args:
            status: Order status to filter by.
            created_before: Only orders created before this time.

        Returns:
            List of PaymentOrder instances.
        """
        query = select(PaymentOrder).where(PaymentOrder.status == status)
        if created_before is not None:
            query = query.where(PaymentOrder.created_at < created_before)
        query = query.order_by(PaymentOrder.created_at.asc())
        result = await self.session.execute(query)
        return result.scalars().all()

    async def list_for_sigla(
        self,
        sigla: str,
        statuses: Sequence[str],
    ) -> Sequence[PaymentOrder]:
        """List a student's orders in any of ``statuses``, oldest first."""
        result = await self.session.execute(
            select(PaymentOrder)
            .where(
                PaymentOrder.sigla == sigla,
                PaymentOrder.status.in_(list(statuses)),
            )
            .order_by(PaymentOrder.created_at.asc())
        )
        return result.scalars().all()

    async def list_created_between(
        self,
        start_time: datetime,
        end_time: datetime,
    ) -> Sequence[PaymentOrder]:
        result = await self.session.execute(
            select(PaymentOrder)
            .where(
                PaymentOrder.created_at >= start_time,
                PaymentOrder.created_at < end_time,
            )
            .order_by(PaymentOrder.created_at.asc())
        )
        return result.scalars().all()


class ServiceRepository:
    """Repository for ServiceLineItem operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        sigla: str,
        category: str,
        amount: int,
        pieces: int = 1,
        status: str = ServiceStatus.UNPAID.value,
        notes: Optional[str] = None,
    ) -> ServiceLineItem:
        item = ServiceLineItem(
            sigla=sigla,
            category=category,
            amount=amount,
            pieces=pieces,
            status=status,
            notes=notes,
        )
        self.session.add(item)
        await self.session.flush()
        logger.info(f"Created {category} service {item.id} for sigla {sigla}")
        return item

    async def get_by_id(self, service_id: int) -> Optional[ServiceLineItem]:
        return await self.session.get(ServiceLineItem, service_id)

    async def find(
        self,
        sigla: Optional[str] = None,
        status: Optional[str] = None,
        ids: Optional[List[int]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[ServiceLineItem], int]:
        """Find service items matching the given filters.

        Args:
            sigla: Student identifier.
            status: paid or unpaid.
            ids: Restrict to these ids.
            limit: Page size, None for everything.
            offset: Page offset.

        Returns:
            Tuple of (items, total matching count).
        """
        conditions = []
        if sigla is not None:
            conditions.append(ServiceLineItem.sigla == sigla)
        if status is not None:
            conditions.append(ServiceLineItem.status == status)
        if ids is not None:
            conditions.append(ServiceLineItem.id.in_(ids))

        count_result = await self.session.execute(
            select(func.count()).select_from(ServiceLineItem).where(*conditions)
        )
        total = count_result.scalar_one()

        query = (
            select(ServiceLineItem)
            .where(*conditions)
            .order_by(ServiceLineItem.date.asc(), ServiceLineItem.id.asc())
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all()), total

    async def update(self, service_id: int, patch: Dict[str, Any]) -> Optional[ServiceLineItem]:
        """Apply a partial update to a service item.

        Args:
            service_id: Item id.
            patch: Column values to set.

        Returns:
            Updated item, or None if it does not exist.
        """
        item = await self.get_by_id(service_id)
        if item is None:
            return None
        for key, value in patch.items():
            if not hasattr(ServiceLineItem, key) or key == "id":
                raise ValueError(f"Unknown service field: {key}")
            setattr(item, key, value)
        item.updated_at = utcnow()
        await self.session.flush()
        return item


class StatusHistoryRepository:
    """Repository for the order status audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        order_id: str,
        new_status: str,
        source: str,
        previous_status: Optional[str] = None,
        provider_status: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order_id,
            previous_status=previous_status,
            new_status=new_status,
            source=source,
            provider_status=provider_status,
            detail=detail,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_order_id(self, order_id: str) -> Sequence[OrderStatusHistory]:
        result = await self.session.execute(
            select(OrderStatusHistory)
            .where(OrderStatusHistory.order_id == order_id)
            .order_by(OrderStatusHistory.id.asc())
        )
        return result.scalars().all()


class WebhookEventRepository:
    """Repository for processed webhook deliveries."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, provider: str, event_id: str) -> bool:
        result = await self.session.execute(
            select(WebhookEvent.id).where(
                WebhookEvent.provider == provider,
                WebhookEvent.event_id == event_id,
            )
        )
        return result.scalar_one_or_none() is not None

    async def create(
        self,
        provider: str,
        event_id: str,
        event_type: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> WebhookEvent:
        event = WebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            order_id=order_id,
        )
        self.session.add(event)
        await self.session.flush()
        return event
