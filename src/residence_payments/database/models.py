"""SQLAlchemy models for the payment record store and the service ledger."""

import enum
import json
import datetime as dt
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    String,
    Integer,
    Date,
    DateTime,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class OrderStatus(str, enum.Enum):
    """Lifecycle of a payment order. COMPLETED and FAILED are terminal."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (OrderStatus.COMPLETED.value, OrderStatus.FAILED.value)

# Allowed predecessors for each target status
ALLOWED_TRANSITIONS: Dict[str, tuple] = {
    OrderStatus.PROCESSING.value: (OrderStatus.PENDING.value,),
    OrderStatus.COMPLETED.value: (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value),
    OrderStatus.FAILED.value: (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value),
}


class PaymentMethod(str, enum.Enum):
    """Gateways an order can be paid through."""
    STRIPE = "stripe"
    SATISPAY = "satispay"
    PAYPAL = "paypal"
    SUMUP = "sumup"
    NEXI = "nexi"


class ServiceStatus(str, enum.Enum):
    PAID = "paid"
    UNPAID = "unpaid"


class ServiceCategory(str, enum.Enum):
    SIGLATURA = "siglatura"
    HAPPY_HOUR = "happy_hour"
    RIPARAZIONE = "riparazione"


# Default unit prices in minor units
DEFAULT_PRICES: Dict[str, int] = {
    ServiceCategory.SIGLATURA.value: 50,
    ServiceCategory.HAPPY_HOUR.value: 100,
    ServiceCategory.RIPARAZIONE.value: 400,
}


class StatusSource(str, enum.Enum):
    """What triggered a status change on an order."""
    CHECKOUT = "checkout"
    WEBHOOK = "webhook"
    POLL = "poll"
    SWEEP = "sweep"
    CAPTURE = "capture"
    MANUAL = "manual"


def format_amount(minor_units: int) -> Decimal:
    """Convert minor units to a 2dp decimal."""
    return (Decimal(minor_units) / 100).quantize(Decimal("0.01"))


class PaymentOrder(Base):
    """One attempted payment. Rows are never deleted."""
    __tablename__ = "payment_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    sigla: Mapped[str] = mapped_column(String(50), nullable=False)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentMethod.STRIPE.value)
    provider_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value)

    # Metadata stored as JSON, holds service_ids among other things
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_payment_orders_status", "status"),
        Index("ix_payment_orders_sigla", "sigla"),
        Index("ix_payment_orders_created_at", "created_at"),
        Index("ix_payment_orders_provider_payment_id", "payment_method", "provider_payment_id"),
    )

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        """Get metadata as dictionary."""
        if self.metadata_json:
            return json.loads(self.metadata_json)
        return {}

    @metadata_dict.setter
    def metadata_dict(self, value: Optional[Dict[str, Any]]) -> None:
        if value is not None:
            self.metadata_json = json.dumps(value)
        else:
            self.metadata_json = None

    @property
    def service_ids(self) -> List[int]:
        return [int(i) for i in self.metadata_dict.get("service_ids", [])]

    @property
    def amount_decimal(self) -> Decimal:
        return format_amount(self.amount)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Convert order to dictionary representation."""
        return {
            "order_id": self.order_id,
            "sigla": self.sigla,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "amount": str(self.amount_decimal),
            "currency": self.currency,
            "payment_method": self.payment_method,
            "provider_payment_id": self.provider_payment_id,
            "status": self.status,
            "metadata": self.metadata_dict,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class ServiceLineItem(Base):
    """One billable unit of work for a student."""
    __tablename__ = "service_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, default=lambda: utcnow().date())
    sigla: Mapped[str] = mapped_column(String(50), nullable=False)
    category: Mapped[str] = mapped_column(String(20), nullable=False)
    pieces: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=ServiceStatus.UNPAID.value)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_service_line_items_sigla_status", "sigla", "status"),
    )

    @property
    def amount_decimal(self) -> Decimal:
        return format_amount(self.amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date.isoformat() if self.date else None,
            "sigla": self.sigla,
            "category": self.category,
            "pieces": self.pieces,
            "amount": str(self.amount_decimal),
            "status": self.status,
            "notes": self.notes,
        }


class OrderStatusHistory(Base):
    """Audit trail of status transitions applied to payment orders."""
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)

    # Raw status reported by the gateway, if any
    provider_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "source": self.source,
            "provider_status": self.provider_status,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class WebhookEvent(Base):
    """Webhook deliveries that were processed successfully."""
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )
