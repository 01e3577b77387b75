"""Tests for the reconciliation engine."""

import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from residence_payments.connectors import (
    RemotePaymentRequest,
    SimulatorConfig,
    SimulatorConnector,
    StatusOutcome,
    build_connectors,
    close_connectors,
)
from residence_payments.database import PaymentMethod, SqlLedgerStorage, utcnow
from residence_payments.errors import (
    NotFoundError,
    OrderNotFoundError,
    PollingTimeoutError,
    SignatureError,
)
from residence_payments.reconciliation import (
    ReconciliationEngine,
    SettlementOutcome,
    WebhookStatus,
)
from residence_payments.services import CheckoutService, CreateOrderRequest
from residence_payments.storage import NewPayment, ServiceFilter


class RacingStorage(SqlLedgerStorage):
    """Lets a competing trigger complete the order just before our write."""

    async def update_payment_status(self, order_id, status, completed_at=None, **kwargs):
        if status == "completed":
            await super().update_payment_status(order_id, "completed", source="webhook")
        return await super().update_payment_status(order_id, status, completed_at=completed_at, **kwargs)


class FlakyStorage(SqlLedgerStorage):
    """Fails to update one service item."""

    broken_service_id = None

    async def update_service(self, service_id, patch):
        if service_id == self.broken_service_id:
            raise RuntimeError("database is locked")
        return await super().update_service(service_id, patch)


@pytest.fixture
def engine(storage, simulators, settings):
    return ReconciliationEngine(storage, simulators, settings)


@pytest.fixture
def checkout(storage, simulators, settings):
    return CheckoutService(storage, simulators, settings)


async def create_order(checkout, sigla: str = "145", method: PaymentMethod = PaymentMethod.STRIPE):
    return await checkout.create_order(CreateOrderRequest(sigla=sigla, payment_method=method))


def webhook_body(payment_id: str, status=None, event_id: str = "evt_1", order_id=None) -> bytes:
    payload = {"id": event_id, "payment_id": payment_id}
    if status is not None:
        payload["status"] = status
    if order_id is not None:
        payload["order_id"] = order_id
    return json.dumps(payload).encode()


async def unpaid_ids(storage, sigla: str = "145"):
    page = await storage.get_services(ServiceFilter(sigla=sigla, status="unpaid"))
    return [item.id for item in page.items]


class TestSettlement:
    """Tests for the shared settlement step."""

    async def test_settle_marks_services_paid(self, engine, checkout, storage, student_145):
        """Test settlement pays every referenced item and completes the order."""
        order = await create_order(checkout)

        result = await engine.settle(order.order_id, source="manual")

        assert result.outcome == SettlementOutcome.SETTLED
        assert result.settled_service_ids == student_145
        assert result.is_partial is False
        assert await unpaid_ids(storage) == []
        stored = await storage.get_payment_by_order_id(order.order_id)
        assert stored.status == "completed"
        assert stored.completed_at == result.completed_at

    async def test_settle_is_idempotent(self, storage, simulators, settings, checkout, student_145):
        """Test a second settlement changes nothing and does not notify again."""
        hook = AsyncMock()
        engine = ReconciliationEngine(storage, simulators, settings, on_settled=hook)
        order = await create_order(checkout)

        first = await engine.settle(order.order_id)
        stored = await storage.get_payment_by_order_id(order.order_id)
        second = await engine.settle(order.order_id)

        assert first.outcome == SettlementOutcome.SETTLED
        assert second.outcome == SettlementOutcome.ALREADY_SETTLED
        assert second.succeeded is True
        assert second.completed_at == stored.completed_at
        hook.assert_awaited_once()

    async def test_lost_race_does_not_notify(self, db, simulators, settings, student_145):
        """Test the trigger that loses the completion race reports ALREADY_SETTLED."""
        storage = RacingStorage(db)
        hook = AsyncMock()
        engine = ReconciliationEngine(storage, simulators, settings, on_settled=hook)
        order = await create_order(CheckoutService(storage, simulators, settings))

        result = await engine.settle(order.order_id)

        assert result.outcome == SettlementOutcome.ALREADY_SETTLED
        hook.assert_not_awaited()
        history = await storage.get_status_history(order.order_id)
        assert [h.new_status for h in history].count("completed") == 1

    async def test_partial_settlement(self, db, simulators, settings, add_service):
        """Test one failing item does not block the others or the order."""
        storage = FlakyStorage(db)
        first = await add_service("145", 50)
        second = await add_service("145", 100)
        storage.broken_service_id = second
        engine = ReconciliationEngine(storage, simulators, settings)
        order = await create_order(CheckoutService(storage, simulators, settings))

        result = await engine.settle(order.order_id)

        assert result.outcome == SettlementOutcome.SETTLED
        assert result.settled_service_ids == [first]
        assert result.failed_service_ids == [second]
        assert (await storage.get_payment_by_order_id(order.order_id)).status == "completed"
        assert await unpaid_ids(storage) == [second]

    async def test_foreign_sigla_item_not_settled(self, engine, storage, add_service):
        """Test items of another student are never marked paid."""
        own = await add_service("145", 50)
        foreign = await add_service("200", 50)
        await storage.create_payment(NewPayment(
            order_id="STRIPE_145_1", sigla="145", amount=100, currency="EUR",
            payment_method="stripe", metadata={"service_ids": [own, foreign]},
        ))

        result = await engine.settle("STRIPE_145_1")

        assert result.settled_service_ids == [own]
        assert result.failed_service_ids == [foreign]
        assert await unpaid_ids(storage, "200") == [foreign]

    async def test_falls_back_to_unpaid_items_of_sigla(self, engine, storage, add_service):
        """Test an order without recorded ids settles the sigla's unpaid items."""
        a = await add_service("145", 50)
        b = await add_service("145", 100)
        await storage.create_payment(NewPayment(
            order_id="STRIPE_145_2", sigla="145", amount=150, currency="EUR",
            payment_method="stripe", metadata={},
        ))

        result = await engine.settle("STRIPE_145_2")

        assert sorted(result.settled_service_ids) == [a, b]
        assert await unpaid_ids(storage) == []

    async def test_item_paid_by_other_order_needs_refund(self, engine, storage, student_145):
        """Test a second payment for the same item is flagged instead of counted as settled."""
        for order_id, method in (("STRIPE_145_1", "stripe"), ("SATISPAY_145_2", "satispay")):
            await storage.create_payment(NewPayment(
                order_id=order_id, sigla="145", amount=50, currency="EUR",
                payment_method=method, metadata={"service_ids": student_145},
            ))

        first = await engine.settle("STRIPE_145_1", source="webhook")
        second = await engine.settle("SATISPAY_145_2", source="sweep")

        assert first.settled_service_ids == student_145
        assert first.needs_refund is False
        assert second.outcome == SettlementOutcome.SETTLED
        assert second.settled_service_ids == []
        assert second.already_paid_service_ids == student_145
        assert second.needs_refund is True
        assert (await storage.get_payment_by_order_id("SATISPAY_145_2")).status == "completed"
        history = await storage.get_status_history("SATISPAY_145_2")
        assert "already paid" in history[-1].detail

    async def test_manually_paid_item_counts_as_settled(self, engine, checkout, storage, student_145):
        """Test an item a staff member marked paid is not reported as a double payment."""
        order = await create_order(checkout)
        await storage.update_service(student_145[0], {"status": "paid"})

        result = await engine.settle(order.order_id)

        assert result.settled_service_ids == student_145
        assert result.already_paid_service_ids == []

    async def test_failed_order_is_not_completed(self, engine, checkout, storage, student_145):
        """Test a success report for a failed order is refused."""
        order = await create_order(checkout)
        await storage.update_payment_status(order.order_id, "failed")

        result = await engine.settle(order.order_id, source="webhook")

        assert result.outcome == SettlementOutcome.REJECTED
        assert (await storage.get_payment_by_order_id(order.order_id)).status == "failed"
        assert await unpaid_ids(storage) == student_145

    async def test_unknown_order(self, engine):
        """Test settling a missing order raises OrderNotFoundError."""
        with pytest.raises(OrderNotFoundError):
            await engine.settle("STRIPE_0_0")

    async def test_hook_failure_is_contained(self, storage, simulators, settings, checkout, student_145):
        """Test a failing notification hook does not undo the settlement."""
        hook = AsyncMock(side_effect=RuntimeError("smtp down"))
        engine = ReconciliationEngine(storage, simulators, settings, on_settled=hook)
        order = await create_order(checkout)

        result = await engine.settle(order.order_id)

        assert result.outcome == SettlementOutcome.SETTLED
        assert await unpaid_ids(storage) == []


class TestApplyOutcome:
    """Tests for applying mapped provider outcomes."""

    async def test_processing_only_from_pending(self, engine, storage):
        """Test PROCESSING moves a pending order forward and nothing else."""
        order = await storage.create_payment(NewPayment(
            order_id="NEXI_1_1", sigla="1", amount=50, currency="EUR", payment_method="nexi",
        ))
        assert await engine.apply_outcome(order, StatusOutcome.PROCESSING, "poll") == "processing"

        order = await storage.get_payment_by_order_id("NEXI_1_1")
        assert await engine.apply_outcome(order, StatusOutcome.PROCESSING, "poll") == "processing"

    async def test_failed_outcome(self, engine, checkout, storage, student_145):
        """Test FAILED fails the order and leaves services unpaid."""
        created = await create_order(checkout)
        order = await storage.get_payment_by_order_id(created.order_id)

        assert await engine.apply_outcome(order, StatusOutcome.FAILED, "sweep", "DECLINED") == "failed"
        assert await unpaid_ids(storage) == student_145

    async def test_no_op_leaves_order(self, engine, checkout, storage, student_145):
        """Test NO_OP and PENDING change nothing."""
        created = await create_order(checkout)
        order = await storage.get_payment_by_order_id(created.order_id)

        assert await engine.apply_outcome(order, StatusOutcome.NO_OP, "webhook") == "processing"
        assert await engine.apply_outcome(order, StatusOutcome.PENDING, "webhook") == "processing"
        assert len(await storage.get_status_history(created.order_id)) == 2


class TestWebhookTrigger:
    """Tests for handle_webhook."""

    async def test_success_webhook_settles(self, engine, checkout, storage, student_145):
        """Test a success notification completes the order and pays the service."""
        order = await create_order(checkout)

        result = await engine.handle_webhook(
            "stripe", {}, webhook_body(order.provider_payment_id, "ACCEPTED")
        )

        assert result.status == WebhookStatus.PROCESSED
        assert result.order_id == order.order_id
        assert result.local_status == "completed"
        assert await unpaid_ids(storage) == []
        assert await storage.has_processed_event("stripe", "evt_1") is True

    async def test_duplicate_webhook(self, engine, checkout, storage, student_145):
        """Test a redelivered notification is acknowledged without changes."""
        order = await create_order(checkout)
        body = webhook_body(order.provider_payment_id, "ACCEPTED")

        await engine.handle_webhook("stripe", {}, body)
        stored = await storage.get_payment_by_order_id(order.order_id)
        second = await engine.handle_webhook("stripe", {}, body)

        assert second.status == WebhookStatus.DUPLICATE
        again = await storage.get_payment_by_order_id(order.order_id)
        assert again.completed_at == stored.completed_at
        assert [h.new_status for h in await storage.get_status_history(order.order_id)].count("completed") == 1

    async def test_invalid_signature(self, storage, settings, simulators, student_145):
        """Test a bad signature raises and changes nothing."""
        simulators["stripe"] = SimulatorConnector(
            "stripe", config=SimulatorConfig(auto_accept_seconds=None), webhook_secret="whsec_sim"
        )
        engine = ReconciliationEngine(storage, simulators, settings)
        order = await create_order(CheckoutService(storage, simulators, settings))

        with pytest.raises(SignatureError):
            await engine.handle_webhook(
                "stripe",
                {"x-signature": "00" * 32, "x-timestamp": str(int(utcnow().timestamp()))},
                webhook_body(order.provider_payment_id, "ACCEPTED"),
            )

        assert (await storage.get_payment_by_order_id(order.order_id)).status == "processing"
        assert await unpaid_ids(storage) == student_145

    async def test_unknown_order_ignored(self, engine):
        """Test a notification for no local order is acknowledged and ignored."""
        result = await engine.handle_webhook(
            "satispay", {}, webhook_body("satispay_sim_1_x", "ACCEPTED", order_id="SATISPAY_9_9")
        )
        assert result.status == WebhookStatus.IGNORED

    async def test_order_of_other_gateway_ignored(self, engine, checkout, storage, student_145):
        """Test a gateway cannot settle an order paid through another one."""
        order = await create_order(checkout, method=PaymentMethod.STRIPE)
        result = await engine.handle_webhook(
            "satispay", {}, webhook_body("whatever", "ACCEPTED", order_id=order.order_id)
        )
        assert result.status == WebhookStatus.IGNORED
        assert await unpaid_ids(storage) == student_145

    async def test_unknown_provider(self, engine):
        """Test webhooks for an unconfigured gateway raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await engine.handle_webhook("bitcoin", {}, b"{}")

    async def test_lookup_webhook(self, engine, checkout, simulators, storage, student_145):
        """Test a status-less notification is resolved by a status lookup."""
        order = await create_order(checkout, method=PaymentMethod.SUMUP)
        simulators["sumup"].accept(order.provider_payment_id)

        result = await engine.handle_webhook(
            "sumup", {}, webhook_body(order.provider_payment_id, event_id="chk_1")
        )

        assert result.status == WebhookStatus.PROCESSED
        assert result.event_id == "chk_1:ACCEPTED"
        assert result.local_status == "completed"

    async def test_lookup_webhook_duplicate(self, engine, checkout, simulators, student_145):
        """Test a repeated status-less notification is deduplicated per status."""
        order = await create_order(checkout, method=PaymentMethod.SUMUP)
        simulators["sumup"].accept(order.provider_payment_id)
        body = webhook_body(order.provider_payment_id, event_id="chk_1")

        await engine.handle_webhook("sumup", {}, body)
        second = await engine.handle_webhook("sumup", {}, body)

        assert second.status == WebhookStatus.DUPLICATE

    async def test_failure_webhook(self, engine, checkout, storage, student_145):
        """Test a decline notification fails the order."""
        order = await create_order(checkout)
        result = await engine.handle_webhook("stripe", {}, webhook_body(order.provider_payment_id, "DECLINED"))
        assert result.local_status == "failed"
        assert await unpaid_ids(storage) == student_145

    async def test_unmapped_status_is_no_op(self, engine, checkout, storage, student_145):
        """Test an unknown provider status leaves the order alone."""
        order = await create_order(checkout)
        result = await engine.handle_webhook("stripe", {}, webhook_body(order.provider_payment_id, "REFUNDED"))
        assert result.status == WebhookStatus.NO_OP
        assert (await storage.get_payment_by_order_id(order.order_id)).status == "processing"


class TestPollingTrigger:
    """Tests for poll and wait_for_completion."""

    async def test_poll_pending(self, engine, checkout, student_145):
        """Test polling a payment still in progress."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        result = await engine.poll(order.order_id)
        assert result.status == "PENDING"
        assert result.local_status == "processing"
        assert result.sigla == "145"
        assert str(result.amount) == "0.50"

    async def test_poll_settles_accepted_payment(self, engine, checkout, simulators, storage, student_145):
        """Test polling a paid payment settles the order."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        simulators["satispay"].accept(order.provider_payment_id)

        result = await engine.poll(order.order_id)

        assert result.status == "ACCEPTED"
        assert result.local_status == "completed"
        assert result.is_terminal is True
        assert await unpaid_ids(storage) == []

    async def test_poll_amount_mismatch_not_settled(self, engine, checkout, simulators, storage, student_145):
        """Test a paid amount that differs from the order leaves it for review."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        simulators["satispay"]._payments[order.provider_payment_id].amount = 5
        simulators["satispay"].accept(order.provider_payment_id)

        result = await engine.poll(order.order_id)

        assert result.status == "ACCEPTED"
        assert result.local_status == "processing"
        assert await unpaid_ids(storage) == student_145

    async def test_poll_terminal_order_answers_from_storage(self, engine, checkout, simulators, student_145):
        """Test a completed order is not queried again."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        await engine.settle(order.order_id)
        simulators["satispay"].config = SimulatorConfig(unreachable=True)

        result = await engine.poll(order.order_id)

        assert result.status == "completed"
        assert result.local_status == "completed"

    async def test_poll_provider_error_is_unknown(self, engine, checkout, simulators, student_145):
        """Test gateway failures are reported as unknown."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        simulators["satispay"].config = SimulatorConfig(unreachable=True)

        result = await engine.poll(order.order_id)

        assert result.status == "unknown"
        assert result.local_status == "processing"

    async def test_poll_unknown_order(self, engine):
        """Test polling a missing order raises OrderNotFoundError."""
        with pytest.raises(OrderNotFoundError):
            await engine.poll("SATISPAY_0_0")

    async def test_wait_for_completion(self, engine, checkout, simulators, student_145):
        """Test waiting returns once the order is terminal."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        simulators["satispay"].accept(order.provider_payment_id)

        result = await engine.wait_for_completion(order.order_id, interval=0.01, timeout=1)

        assert result.local_status == "completed"

    async def test_wait_timeout_leaves_order_processing(self, engine, checkout, storage, student_145):
        """Test giving up does not fail the order."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)

        with pytest.raises(PollingTimeoutError):
            await engine.wait_for_completion(order.order_id, interval=0.01, timeout=0.05)

        assert (await storage.get_payment_by_order_id(order.order_id)).status == "processing"

    async def test_capture(self, engine, checkout, simulators, storage, student_145):
        """Test capture applies the captured status."""
        order = await create_order(checkout, method=PaymentMethod.PAYPAL)
        simulators["paypal"].accept(order.provider_payment_id)

        result = await engine.capture(order.order_id)

        assert result.local_status == "completed"
        history = await storage.get_status_history(order.order_id)
        assert history[-1].source == "capture"


class TestSweepTrigger:
    """Tests for the periodic sweep."""

    async def test_sweep_settles_stuck_order(self, engine, checkout, simulators, storage, student_145):
        """Test a paid order older than the grace period is settled without a webhook."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        simulators["satispay"].accept(order.provider_payment_id)

        report = await engine.sweep(now=utcnow() + timedelta(minutes=6))

        assert report.examined == 1
        assert report.settled == 1
        assert (await storage.get_payment_by_order_id(order.order_id)).status == "completed"
        assert await unpaid_ids(storage) == []
        history = await storage.get_status_history(order.order_id)
        assert history[-1].source == "sweep"

    async def test_sweep_skips_recent_orders(self, engine, checkout, simulators, student_145):
        """Test orders inside the grace period are left to the other triggers."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        simulators["satispay"].accept(order.provider_payment_id)

        report = await engine.sweep(now=utcnow() + timedelta(minutes=1))

        assert report.examined == 0

    async def test_sweep_counts_each_outcome(self, engine, checkout, simulators, add_service):
        """Test settled, failed, unchanged and retry counters."""
        for sigla in ("1", "2", "3", "4"):
            await add_service(sigla, 50)
        paid = await create_order(checkout, sigla="1", method=PaymentMethod.SATISPAY)
        declined = await create_order(checkout, sigla="2", method=PaymentMethod.SATISPAY)
        await create_order(checkout, sigla="3", method=PaymentMethod.SATISPAY)
        await create_order(checkout, sigla="4", method=PaymentMethod.NEXI)
        simulators["satispay"].accept(paid.provider_payment_id)
        simulators["satispay"].decline(declined.provider_payment_id)
        simulators["nexi"].config = SimulatorConfig(unreachable=True)

        report = await engine.sweep(now=utcnow() + timedelta(minutes=10))

        assert report.examined == 4
        assert report.settled == 1
        assert report.failed == 1
        assert report.unchanged == 1
        assert report.retry_later == 1
        assert report.errors == 0
        assert report.finished_at is not None

    async def test_sweep_continues_after_unexpected_error(self, engine, checkout, simulators, add_service):
        """Test an unexpected error on one order does not stop the sweep."""
        await add_service("1", 50)
        await add_service("2", 50)
        broken = await create_order(checkout, sigla="1", method=PaymentMethod.SATISPAY)
        ok = await create_order(checkout, sigla="2", method=PaymentMethod.SATISPAY)
        simulators["satispay"].accept(ok.provider_payment_id)
        # corrupted simulator entry: the lookup fails with an unexpected error
        simulators["satispay"]._payments[broken.provider_payment_id] = "corrupt"

        report = await engine.sweep(now=utcnow() + timedelta(minutes=10))

        assert report.errors == 1
        assert report.error_details[0]["order_id"] == broken.order_id
        assert report.settled == 1

    async def test_sweep_leaves_amount_mismatch(self, engine, checkout, simulators, storage, student_145):
        """Test the sweep does not settle an order paid for the wrong amount."""
        order = await create_order(checkout, method=PaymentMethod.SATISPAY)
        simulators["satispay"]._payments[order.provider_payment_id].amount = 5000
        simulators["satispay"].accept(order.provider_payment_id)

        report = await engine.sweep(now=utcnow() + timedelta(minutes=10))

        assert report.settled == 0
        assert report.unchanged == 1
        assert (await storage.get_payment_by_order_id(order.order_id)).status == "processing"

    async def test_production_simulator_is_never_settled(self, storage, settings, student_145):
        """Test a simulated gateway in production cannot complete an order on its own."""
        settings.environment = "production"
        settings.simulator_auto_accept_seconds = 0
        connectors = build_connectors(settings)
        engine = ReconciliationEngine(storage, connectors, settings)
        try:
            await storage.create_payment(NewPayment(
                order_id="SATISPAY_145_1", sigla="145", amount=50, currency="EUR",
                payment_method="satispay", metadata={"service_ids": student_145},
            ))
            handle = await connectors["satispay"].create_remote_payment(RemotePaymentRequest(
                order_id="SATISPAY_145_1", amount=50, description="Siglatura",
                sigla="145", service_ids=student_145,
            ))
            await storage.set_provider_reference("SATISPAY_145_1", handle.provider_payment_id)
            await storage.update_payment_status("SATISPAY_145_1", "processing", source="checkout")

            polled = await engine.poll("SATISPAY_145_1")
            report = await engine.sweep(now=utcnow() + timedelta(minutes=10))
        finally:
            await close_connectors(connectors)

        assert polled.local_status == "processing"
        assert report.settled == 0
        assert report.unchanged == 1
        assert await unpaid_ids(storage) == student_145
