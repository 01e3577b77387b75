"""Database module for the payment record store and service ledger."""

from .models import (
    Base,
    PaymentOrder,
    ServiceLineItem,
    OrderStatusHistory,
    WebhookEvent,
    OrderStatus,
    PaymentMethod,
    ServiceStatus,
    ServiceCategory,
    StatusSource,
    DEFAULT_PRICES,
    TERMINAL_STATUSES,
    format_amount,
    utcnow,
)
from .session import (
    create_async_engine,
    create_session_factory,
    DatabaseManager,
)
from .repository import (
    PaymentOrderRepository,
    ServiceRepository,
    StatusHistoryRepository,
    WebhookEventRepository,
)
from .ledger import SqlLedgerStorage

__all__ = [
    # Models
    "Base",
    "PaymentOrder",
    "ServiceLineItem",
    "OrderStatusHistory",
    "WebhookEvent",
    "OrderStatus",
    "PaymentMethod",
    "ServiceStatus",
    "ServiceCategory",
    "StatusSource",
    "DEFAULT_PRICES",
    "TERMINAL_STATUSES",
    "format_amount",
    "utcnow",
    # Session management
    "create_async_engine",
    "create_session_factory",
    "DatabaseManager",
    # Repositories
    "PaymentOrderRepository",
    "ServiceRepository",
    "StatusHistoryRepository",
    "WebhookEventRepository",
    "SqlLedgerStorage",
]
