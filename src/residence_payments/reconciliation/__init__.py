"""Reconciliation of payment orders with the gateways.

Features:
- Webhook, client-poll and periodic sweep triggers over one state machine
- Idempotent settlement of the service ledger
- Scheduled sweep and daily settlement report
"""

from .models import (
    DailySettlementReport,
    MethodTotals,
    PollResult,
    SettlementOutcome,
    SettlementResult,
    SweepReport,
    WebhookResult,
    WebhookStatus,
)
from .engine import ReconciliationEngine
from .report import DailyReportJob, ReportGenerator
from .scheduler import ReconciliationScheduler

__all__ = [
    # Models
    "DailySettlementReport",
    "MethodTotals",
    "PollResult",
    "SettlementOutcome",
    "SettlementResult",
    "SweepReport",
    "WebhookResult",
    "WebhookStatus",
    # Core Components
    "ReconciliationEngine",
    "DailyReportJob",
    "ReportGenerator",
    "ReconciliationScheduler",
]
