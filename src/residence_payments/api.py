"""HTTP API for checkout, payment status and gateway webhooks.

Run with ``uvicorn residence_payments.api:create_app --factory``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from .auth import limiter, verify_api_key
from .config import Settings
from .connectors import ConnectorBase, build_connectors, close_connectors
from .database import DatabaseManager, SqlLedgerStorage
from .errors import NotFoundError, PaymentsError, SignatureError, ValidationError
from .reconciliation import DailyReportJob, ReconciliationEngine, ReconciliationScheduler
from .reconciliation.api import router as reconciliation_router
from .services import CheckoutService, CreateOrderRequest

logger = logging.getLogger(__name__)


async def payments_error_handler(request: Request, exc: PaymentsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(f"Rate limit exceeded for {request.client.host if request.client else 'unknown'}")
    return JSONResponse(status_code=429, content={"detail": "Too many requests"})


def create_app(
    settings: Optional[Settings] = None,
    connectors: Optional[Dict[str, ConnectorBase]] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Application settings; read from the environment when omitted.
        connectors: Gateway adapters; built from ``settings`` when omitted.

    Returns:
        Configured FastAPI app. Collaborators are created in the lifespan
        and stored on ``app.state``.
    """
    settings = settings or Settings()
    logging.getLogger("residence_payments").setLevel(settings.log_level.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = DatabaseManager(settings.database_url)
        await db.initialize()
        storage = SqlLedgerStorage(db)
        gateways = connectors if connectors is not None else build_connectors(settings)
        engine = ReconciliationEngine(storage, gateways, settings)
        report_job = DailyReportJob(storage, settings.reports_dir, settings.timezone)
        scheduler = ReconciliationScheduler(engine, report_job, settings)

        app.state.db = db
        app.state.storage = storage
        app.state.connectors = gateways
        app.state.checkout = CheckoutService(storage, gateways, settings)
        app.state.engine = engine
        app.state.report_job = report_job
        app.state.scheduler = scheduler

        if settings.scheduler_enabled:
            scheduler.start()
        logger.info(f"Residence payments API started ({settings.environment})")

        yield

        scheduler.stop()
        await close_connectors(gateways)
        await db.shutdown()
        logger.info("Residence payments API stopped")

    app = FastAPI(title="Residence Payments API", lifespan=lifespan)
    app.state.settings = settings
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(PaymentsError, payments_error_handler)
    app.include_router(reconciliation_router)

    @app.get("/services/pending/{sigla}")
    async def pending_services(sigla: str, request: Request):
        result = await request.app.state.checkout.list_pending_services(sigla)
        return result.model_dump(mode="json")

    @app.post("/payments")
    @limiter.limit("20/minute")
    async def create_payment(request: Request, body: CreateOrderRequest):
        """Create an order for every unpaid service of the student."""
        result = await request.app.state.checkout.create_order(body)
        return result.model_dump(mode="json")

    @app.get("/payments/status/{order_id}")
    async def payment_status(order_id: str, request: Request):
        result = await request.app.state.engine.poll(order_id)
        return result.to_response()

    @app.post("/payments/{order_id}/capture")
    async def capture_payment(order_id: str, request: Request):
        result = await request.app.state.engine.capture(order_id)
        return result.to_response()

    @app.post("/webhooks/{provider}")
    async def gateway_webhook(provider: str, request: Request):
        """
        Receive a gateway notification.

        Signature and parse failures answer 400 and change nothing.
        Anything unexpected answers a generic 500 so the gateway redelivers.
        """
        body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}
        try:
            result = await request.app.state.engine.handle_webhook(provider, headers, body)
        except (SignatureError, ValidationError, NotFoundError):
            raise
        except Exception as e:
            logger.error(f"{provider} webhook processing failed: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"detail": "Webhook processing failed"})
        return result.to_response()

    @app.patch("/services/{service_id}/mark-paid")
    async def mark_service_paid(
        service_id: int,
        request: Request,
        api_key: str = Depends(verify_api_key),
    ):
        return await request.app.state.checkout.mark_service_paid(service_id)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "environment": settings.environment}

    return app
