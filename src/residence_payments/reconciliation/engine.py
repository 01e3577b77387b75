"""Reconciliation engine.

Webhooks, client polling and the periodic sweep all end in ``apply_outcome``
and share one settlement step, so the three triggers converge on the same
end state for an order whatever order they arrive in.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

from ..config import Settings
from ..connectors.base import ConnectorBase, ProviderStatus, StatusOutcome
from ..database.models import (
    OrderStatus,
    PaymentOrder,
    ServiceStatus,
    StatusSource,
    utcnow,
)
from ..errors import (
    NotFoundError,
    OrderNotFoundError,
    PartialSettlementError,
    PollingTimeoutError,
    ProviderError,
    SignatureError,
)
from ..storage import LedgerStorage, ServiceFilter
from .models import (
    PollResult,
    SettlementOutcome,
    SettlementResult,
    SweepReport,
    WebhookResult,
    WebhookStatus,
)

logger = logging.getLogger(__name__)

UNKNOWN_STATUS = "unknown"

SettledHook = Callable[[PaymentOrder, SettlementResult], Awaitable[None]]


class ReconciliationEngine:
    """Drives payment orders to their terminal state."""

    def __init__(
        self,
        storage: LedgerStorage,
        connectors: Dict[str, ConnectorBase],
        settings: Settings,
        on_settled: Optional[SettledHook] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the engine.

        Args:
            storage: Payment record store and service ledger.
            connectors: Gateway adapters keyed by payment method.
            settings: Application settings (grace period, polling limits).
            on_settled: Awaited once per order, by whichever trigger completes it.
            clock: Source of naive UTC timestamps.
        """
        self.storage = storage
        self.connectors = connectors
        self.settings = settings
        self.on_settled = on_settled
        self._clock = clock

    def connector_for(self, payment_method: str) -> ConnectorBase:
        connector = self.connectors.get(payment_method)
        if connector is None:
            raise NotFoundError(f"Unknown payment provider '{payment_method}'")
        return connector

    async def _get_order(self, order_id: str) -> PaymentOrder:
        order = await self.storage.get_payment_by_order_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle(
        self,
        order_id: str,
        source: str = StatusSource.MANUAL.value,
        provider_status: Optional[str] = None,
    ) -> SettlementResult:
        """Mark the order's services paid and the order completed.

        Safe to call any number of times: an order already completed returns
        ALREADY_SETTLED without touching the ledger. Item updates are
        attempted one by one; a failing item is logged and skipped, and the
        order is still completed.

        Args:
            order_id: Order to settle.
            source: Trigger name recorded in the status history.
            provider_status: Raw gateway status, for the audit trail.

        Returns:
            SettlementResult describing what happened.
        """
        order = await self._get_order(order_id)

        if order.status == OrderStatus.COMPLETED.value:
            logger.info(f"Order {order_id} already settled, nothing to do")
            return SettlementResult(
                order_id=order_id,
                outcome=SettlementOutcome.ALREADY_SETTLED,
                completed_at=order.completed_at,
            )
        if order.status == OrderStatus.FAILED.value:
            logger.error(
                f"Order {order_id} is failed but {source} reported it paid; "
                f"leaving it failed for manual review"
            )
            return SettlementResult(order_id=order_id, outcome=SettlementOutcome.REJECTED)

        settled, failed, already_paid = await self._settle_services(order)

        notes = []
        if failed:
            notes.append(f"failed service ids: {failed}")
        if already_paid:
            notes.append(f"already paid service ids: {already_paid}")

        completed_at = self._clock()
        won = await self.storage.update_payment_status(
            order_id,
            OrderStatus.COMPLETED.value,
            completed_at=completed_at,
            source=source,
            provider_status=provider_status,
            detail="; ".join(notes) or None,
        )
        if not won:
            # another trigger finished the order between our read and write
            latest = await self._get_order(order_id)
            if latest.status == OrderStatus.COMPLETED.value:
                logger.info(f"Order {order_id} was settled concurrently")
                return SettlementResult(
                    order_id=order_id,
                    outcome=SettlementOutcome.ALREADY_SETTLED,
                    settled_service_ids=settled,
                    failed_service_ids=failed,
                    already_paid_service_ids=already_paid,
                    completed_at=latest.completed_at,
                )
            return SettlementResult(order_id=order_id, outcome=SettlementOutcome.REJECTED)

        result = SettlementResult(
            order_id=order_id,
            outcome=SettlementOutcome.SETTLED,
            settled_service_ids=settled,
            failed_service_ids=failed,
            already_paid_service_ids=already_paid,
            completed_at=completed_at,
        )
        if failed:
            logger.error(PartialSettlementError(order_id, failed).message)
        if already_paid:
            logger.error(
                f"Order {order_id} paid twice for services {already_paid}; "
                f"{order.payment_method} payment {order.provider_payment_id} needs a refund"
            )
        logger.info(f"Order {order_id} settled via {source}: services {settled} marked paid")

        if self.on_settled is not None:
            try:
                await self.on_settled(order, result)
            except Exception as e:
                logger.error(f"Settlement hook failed for order {order_id}: {e}", exc_info=True)
        return result

    async def _settle_services(self, order: PaymentOrder) -> "tuple[List[int], List[int], List[int]]":
        service_ids = order.service_ids
        if service_ids:
            page = await self.storage.get_services(ServiceFilter(ids=service_ids))
        else:
            # no ids recorded: fall back to everything unpaid for the student
            page = await self.storage.get_services(
                ServiceFilter(sigla=order.sigla, status=ServiceStatus.UNPAID.value)
            )
            service_ids = [item.id for item in page.items]

        items = {item.id: item for item in page.items}
        settled: List[int] = []
        failed: List[int] = []
        already_paid: List[int] = []
        paid_by: Optional[Dict[int, str]] = None

        for service_id in service_ids:
            item = items.get(service_id)
            if item is None:
                logger.error(f"Order {order.order_id}: service {service_id} not found")
                failed.append(service_id)
                continue
            if item.sigla != order.sigla:
                logger.error(
                    f"Order {order.order_id}: service {service_id} belongs to "
                    f"sigla {item.sigla}, not {order.sigla}; skipped"
                )
                failed.append(service_id)
                continue
            if item.status == ServiceStatus.PAID.value:
                if paid_by is None:
                    paid_by = await self._paid_by_other_orders(order)
                other = paid_by.get(service_id)
                if other is not None:
                    logger.error(
                        f"Order {order.order_id}: service {service_id} already paid "
                        f"by order {other}; refund required"
                    )
                    already_paid.append(service_id)
                else:
                    settled.append(service_id)
                continue
            try:
                updated = await self.storage.update_service(
                    service_id, {"status": ServiceStatus.PAID.value}
                )
            except Exception as e:
                logger.error(
                    f"Order {order.order_id}: could not mark service {service_id} paid: {e}",
                    exc_info=True,
                )
                failed.append(service_id)
                continue
            if updated is None:
                logger.error(f"Order {order.order_id}: service {service_id} disappeared")
                failed.append(service_id)
            else:
                settled.append(service_id)

        return settled, failed, already_paid

    async def _paid_by_other_orders(self, order: PaymentOrder) -> Dict[int, str]:
        """Map service id to the completed order of the same student that paid it."""
        completed = await self.storage.get_payments_for_sigla(
            order.sigla, (OrderStatus.COMPLETED.value,)
        )
        paid_by: Dict[int, str] = {}
        for other in completed:
            if other.order_id == order.order_id:
                continue
            for service_id in other.service_ids:
                paid_by.setdefault(service_id, other.order_id)
        return paid_by

    # ------------------------------------------------------------------
    # Status application
    # ------------------------------------------------------------------

    async def apply_outcome(
        self,
        order: PaymentOrder,
        outcome: StatusOutcome,
        source: str,
        provider_status: Optional[str] = None,
    ) -> str:
        """Apply a mapped provider outcome to an order.

        Returns:
            The order's local status afterwards.
        """
        if outcome == StatusOutcome.COMPLETED:
            result = await self.settle(order.order_id, source=source, provider_status=provider_status)
            if result.succeeded:
                return OrderStatus.COMPLETED.value
            return (await self._get_order(order.order_id)).status

        if outcome == StatusOutcome.FAILED:
            target = OrderStatus.FAILED.value
        elif outcome == StatusOutcome.PROCESSING:
            target = OrderStatus.PROCESSING.value
        else:
            return order.status

        if order.status == target:
            return target
        applied = await self.storage.update_payment_status(
            order.order_id, target, source=source, provider_status=provider_status
        )
        if applied:
            return target
        return (await self._get_order(order.order_id)).status

    def _checked_outcome(self, order: PaymentOrder, remote: ProviderStatus) -> StatusOutcome:
        """Refuse to settle a payment whose captured amount differs from the order."""
        if (
            remote.outcome == StatusOutcome.COMPLETED
            and remote.amount is not None
            and remote.amount != order.amount
        ):
            logger.error(
                f"Order {order.order_id}: {remote.provider} reports {remote.amount} paid, "
                f"expected {order.amount}; left {order.status} for manual review"
            )
            return StatusOutcome.NO_OP
        return remote.outcome

    # ------------------------------------------------------------------
    # Trigger 1: webhooks
    # ------------------------------------------------------------------

    async def _locate_order(
        self,
        provider: str,
        order_id: Optional[str],
        provider_payment_id: Optional[str],
    ) -> Optional[PaymentOrder]:
        if order_id:
            order = await self.storage.get_payment_by_order_id(order_id)
            if order is not None:
                if order.payment_method != provider:
                    logger.warning(
                        f"{provider} webhook references order {order_id} "
                        f"paid via {order.payment_method}; ignoring"
                    )
                    return None
                return order
        if provider_payment_id:
            return await self.storage.get_payment_by_provider_id(provider, provider_payment_id)
        return None

    async def handle_webhook(
        self,
        provider: str,
        headers: Mapping[str, str],
        raw_body: bytes,
    ) -> WebhookResult:
        """Authenticate and apply one webhook delivery.

        Raises:
            NotFoundError: Unknown provider.
            SignatureError: Authentication failed; nothing was changed.
            WebhookParseError: Body could not be understood.
            ProviderError: A status lookup failed; the delivery should be retried.
        """
        connector = self.connector_for(provider)

        if not await connector.verify_webhook(raw_body, headers):
            logger.warning(f"Rejected {provider} webhook with invalid signature")
            raise SignatureError(f"Invalid {provider} webhook signature")

        event = connector.parse_webhook(headers, raw_body)

        if not event.needs_lookup and await self.storage.has_processed_event(provider, event.event_id):
            logger.info(f"Duplicate {provider} webhook {event.event_id} ignored")
            return WebhookResult(provider=provider, status=WebhookStatus.DUPLICATE, event_id=event.event_id)

        order = await self._locate_order(provider, event.order_id, event.provider_payment_id)
        if order is None:
            logger.warning(
                f"{provider} webhook {event.event_id} ({event.event_type}) "
                f"matches no local order; acknowledged and ignored"
            )
            return WebhookResult(provider=provider, status=WebhookStatus.IGNORED, event_id=event.event_id)

        outcome = event.outcome
        raw_status = event.raw_status
        event_key = event.event_id
        if event.needs_lookup:
            payment_id = event.provider_payment_id or order.provider_payment_id
            remote = await connector.fetch_remote_status(payment_id)
            outcome, raw_status = self._checked_outcome(order, remote), remote.raw_status
            event_key = f"{event.event_id}:{raw_status}"
            if await self.storage.has_processed_event(provider, event_key):
                logger.info(f"Duplicate {provider} notification {event_key} ignored")
                return WebhookResult(
                    provider=provider,
                    status=WebhookStatus.DUPLICATE,
                    event_id=event_key,
                    order_id=order.order_id,
                    local_status=order.status,
                )

        local_status = await self.apply_outcome(
            order, outcome, StatusSource.WEBHOOK.value, provider_status=raw_status
        )
        await self.storage.record_event(provider, event_key, event.event_type, order.order_id)

        status = WebhookStatus.NO_OP if outcome == StatusOutcome.NO_OP else WebhookStatus.PROCESSED
        logger.info(
            f"{provider} webhook {event_key} for order {order.order_id}: "
            f"{outcome.value} -> {local_status}"
        )
        return WebhookResult(
            provider=provider,
            status=status,
            event_id=event_key,
            order_id=order.order_id,
            local_status=local_status,
        )

    # ------------------------------------------------------------------
    # Trigger 2: client polling
    # ------------------------------------------------------------------

    def _poll_result(self, order: PaymentOrder, status: str, local_status: str) -> PollResult:
        return PollResult(
            order_id=order.order_id,
            status=status,
            local_status=local_status,
            amount=order.amount_decimal,
            sigla=order.sigla,
        )

    async def poll(self, order_id: str, source: str = StatusSource.POLL.value) -> PollResult:
        """Refresh an order from its gateway and return the current status.

        Gateway failures never propagate: they are reported as status
        "unknown" and the order is left for the sweep.

        Raises:
            OrderNotFoundError: No such order.
        """
        order = await self._get_order(order_id)
        if order.is_terminal:
            return self._poll_result(order, order.status, order.status)
        if not order.provider_payment_id:
            return self._poll_result(order, UNKNOWN_STATUS, order.status)

        connector = self.connector_for(order.payment_method)
        try:
            remote = await connector.fetch_remote_status(order.provider_payment_id)
        except ProviderError as e:
            logger.warning(f"Status check for order {order_id} failed: {e.message}")
            return self._poll_result(order, UNKNOWN_STATUS, order.status)

        local_status = await self.apply_outcome(
            order, self._checked_outcome(order, remote), source, provider_status=remote.raw_status
        )
        return self._poll_result(order, remote.raw_status or UNKNOWN_STATUS, local_status)

    async def wait_for_completion(
        self,
        order_id: str,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> PollResult:
        """Poll until the order is terminal or the ceiling is reached.

        Giving up does not touch the order or the provider payment; the
        sweep still picks it up later.

        Raises:
            OrderNotFoundError: No such order.
            PollingTimeoutError: Still not terminal after ``timeout`` seconds.
        """
        interval = interval if interval is not None else self.settings.poll_interval_seconds
        timeout = timeout if timeout is not None else self.settings.poll_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            result = await self.poll(order_id)
            if result.is_terminal:
                return result
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Stopped waiting for order {order_id} after {timeout}s")
                raise PollingTimeoutError(order_id, timeout)
            await asyncio.sleep(min(interval, remaining))

    async def capture(self, order_id: str) -> PollResult:
        """Capture an approved payment (PayPal) and apply the result."""
        order = await self._get_order(order_id)
        if order.is_terminal:
            return self._poll_result(order, order.status, order.status)
        if not order.provider_payment_id:
            return self._poll_result(order, UNKNOWN_STATUS, order.status)

        connector = self.connector_for(order.payment_method)
        remote = await connector.capture(order.provider_payment_id)
        local_status = await self.apply_outcome(
            order,
            self._checked_outcome(order, remote),
            StatusSource.CAPTURE.value,
            provider_status=remote.raw_status,
        )
        return self._poll_result(order, remote.raw_status or UNKNOWN_STATUS, local_status)

    # ------------------------------------------------------------------
    # Trigger 3: periodic sweep
    # ------------------------------------------------------------------

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Re-query every order stuck in processing past the grace period.

        Each order is handled on its own; a failure is counted and logged
        and the sweep moves on.
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self.settings.sweep_grace_minutes)
        report = SweepReport(started_at=now)

        orders = await self.storage.get_payments_by_status(
            OrderStatus.PROCESSING.value, created_before=cutoff
        )
        logger.info(f"Sweep started: {len(orders)} processing order(s) older than {cutoff.isoformat()}")

        for order in orders:
            report.examined += 1
            try:
                if not order.provider_payment_id:
                    report.unchanged += 1
                    continue
                connector = self.connector_for(order.payment_method)
                remote = await connector.fetch_remote_status(order.provider_payment_id)
                local_status = await self.apply_outcome(
                    order,
                    self._checked_outcome(order, remote),
                    StatusSource.SWEEP.value,
                    provider_status=remote.raw_status,
                )
            except ProviderError as e:
                logger.warning(f"Sweep: {order.payment_method} unavailable for order {order.order_id}: {e.message}")
                report.retry_later += 1
                continue
            except Exception as e:
                logger.error(f"Sweep: error reconciling order {order.order_id}: {e}", exc_info=True)
                report.errors += 1
                report.error_details.append({"order_id": order.order_id, "error": str(e)})
                continue

            if local_status == OrderStatus.COMPLETED.value:
                report.settled += 1
            elif local_status == OrderStatus.FAILED.value:
                report.failed += 1
            else:
                report.unchanged += 1

        report.finished_at = self._clock()
        logger.info(
            f"Sweep finished: examined={report.examined} settled={report.settled} "
            f"failed={report.failed} unchanged={report.unchanged} "
            f"retry_later={report.retry_later} errors={report.errors}"
        )
        return report
