"""Result models for settlement and reconciliation."""

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field

from ..database.models import utcnow


class SettlementOutcome(str, enum.Enum):
    """Result of one settlement attempt."""
    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"
    # order is failed; a failed order is never completed
    REJECTED = "rejected"


class SettlementResult(BaseModel):
    order_id: str
    outcome: SettlementOutcome
    settled_service_ids: List[int] = Field(default_factory=list)
    failed_service_ids: List[int] = Field(default_factory=list)
    # Items another completed order had already paid; this payment needs a refund
    already_paid_service_ids: List[int] = Field(default_factory=list)
    completed_at: Optional[datetime] = None

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_service_ids)

    @property
    def needs_refund(self) -> bool:
        return bool(self.already_paid_service_ids)

    @property
    def succeeded(self) -> bool:
        """ALREADY_SETTLED counts as success."""
        return self.outcome in (SettlementOutcome.SETTLED, SettlementOutcome.ALREADY_SETTLED)


class WebhookStatus(str, enum.Enum):
    PROCESSED = "processed"
    NO_OP = "no_op"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"  # no matching local order


class WebhookResult(BaseModel):
    provider: str
    status: WebhookStatus
    event_id: Optional[str] = None
    order_id: Optional[str] = None
    local_status: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        return {
            "received": True,
            "status": self.status.value,
            "orderId": self.order_id,
            "localStatus": self.local_status,
        }


class PollResult(BaseModel):
    """Answer to "what is the status of order X"."""
    order_id: str
    status: str  # provider status, or "unknown" when the gateway could not tell
    local_status: str
    amount: Decimal
    sigla: str

    @property
    def is_terminal(self) -> bool:
        return self.local_status in ("completed", "failed")

    def to_response(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "status": self.status,
            "localStatus": self.local_status,
            "amount": str(self.amount),
            "sigla": self.sigla,
        }


class SweepReport(BaseModel):
    """Statistics of one sweep over stuck orders."""
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    examined: int = 0
    settled: int = 0
    failed: int = 0
    unchanged: int = 0
    retry_later: int = 0
    errors: int = 0
    error_details: List[Dict[str, str]] = Field(default_factory=list)

    def to_summary_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "examined": self.examined,
            "settled": self.settled,
            "failed": self.failed,
            "unchanged": self.unchanged,
            "retry_later": self.retry_later,
            "errors": self.errors,
            "error_details": self.error_details,
        }


class MethodTotals(BaseModel):
    orders: int = 0
    completed: int = 0
    completed_amount: Decimal = Decimal("0.00")


class DailySettlementReport(BaseModel):
    """Orders created on one local calendar day."""
    day: date
    timezone: str
    generated_at: datetime = Field(default_factory=utcnow)
    total_orders: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_method: Dict[str, MethodTotals] = Field(default_factory=dict)
    completed_total: Decimal = Decimal("0.00")
    orders: List[Dict[str, Any]] = Field(default_factory=list)

    def to_summary_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day.isoformat(),
            "timezone": self.timezone,
            "generated_at": self.generated_at.isoformat(),
            "total_orders": self.total_orders,
            "by_status": dict(self.by_status),
            "by_method": {
                method: {
                    "orders": totals.orders,
                    "completed": totals.completed,
                    "completed_amount": str(totals.completed_amount),
                }
                for method, totals in self.by_method.items()
            },
            "completed_total": str(self.completed_total),
        }

    def to_full_dict(self) -> Dict[str, Any]:
        result = self.to_summary_dict()
        result["orders"] = self.orders
        return result
