"""API endpoints for reconciliation operations."""

import logging

from fastapi import APIRouter, Depends, Request

from ..auth import verify_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post("/sweep")
async def run_sweep(request: Request, api_key: str = Depends(verify_api_key)):
    """
    Run a reconciliation sweep now.

    Re-queries every order stuck in processing past the grace period and
    returns the sweep statistics.
    """
    scheduler = request.app.state.scheduler
    report = await scheduler.run_sweep_now()
    return report.to_summary_dict()


@router.get("/health")
async def reconciliation_health(request: Request):
    """Health check for the scheduler and the payment gateways."""
    scheduler = request.app.state.scheduler
    connectors = request.app.state.connectors
    gateways = {name: connector.health_check() for name, connector in connectors.items()}
    healthy = all(g["ok"] for g in gateways.values())
    return {
        "status": "healthy" if healthy else "degraded",
        "service": "reconciliation",
        "scheduler": scheduler.status(),
        "gateways": gateways,
    }
