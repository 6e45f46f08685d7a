"""
Integration tests for SubscriptionLifecycleService against an in-memory ledger.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.orm.exc import StaleDataError

from subledger.billing.exceptions import (
    CustomerNotFoundError,
    DuplicateSubscriptionError,
    PaymentFailedError,
    PlanNotFoundError,
    SubscriptionAlreadyCanceledError,
    SubscriptionConcurrencyError,
    SubscriptionNotFoundError,
    SubscriptionNotUpgradableError,
    SubscriptionStateError,
    SubscriptionValidationError,
)
from subledger.billing.subscriptions.models import (
    CancellationReason,
    ChangeTiming,
    ChurnRiskLevel,
    PaymentData,
    PlanChange,
    ScheduledChangeStatus,
    ScheduledChangeType,
    SubscriptionStatus,
    TransactionRecord,
    TransactionType,
    UserActivity,
)
from subledger.billing.subscriptions.repository import SqlAlchemySubscriptionLedger
from subledger.billing.subscriptions.service import SubscriptionLifecycleService

pytestmark = pytest.mark.integration

JAN_1 = datetime(2024, 1, 1, tzinfo=UTC)


async def _customer(uow_factory, customer_id="cust_1"):
    async with uow_factory() as uow:
        return await uow.customers.get(customer_id)


async def _transactions(uow_factory, subscription_id):
    async with uow_factory() as uow:
        return await uow.transactions.list_for_subscription(subscription_id)


class TestCreateSubscription:
    async def test_paid_plan_is_active_and_charged(self, service, seeded, gateway):
        result = await service.create_subscription(
            "cust_1",
            "basic",
            "monthly",
            payment_info=PaymentData(amount=Decimal("10.00"), payment_method="card"),
            start_date=JAN_1,
        )

        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.next_billing_date == datetime(2024, 2, 1, tzinfo=UTC)
        assert subscription.last_billing_date == JAN_1
        assert subscription.total_paid == Decimal("10.00")
        assert result.transaction.transaction_type == TransactionType.NEW
        assert result.transaction.external_reference == "ch_1"
        assert gateway.charges == [(Decimal("10.00"), "USD")]

        stored = await service.get_subscription(subscription.subscription_id)
        assert stored.next_billing_date == datetime(2024, 2, 1, tzinfo=UTC)
        assert stored.total_paid == Decimal("10.00")

        customer = await _customer(seeded)
        assert customer.subscription_status == SubscriptionStatus.ACTIVE
        assert customer.subscription_plan_id == "basic"
        assert customer.subscription_plan_name == "Basic"
        assert customer.next_billing_date == datetime(2024, 2, 1, tzinfo=UTC)

    async def test_trial_plan_is_not_charged(self, service, seeded, gateway, now):
        result = await service.create_subscription(
            "cust_1", "trial_plan", "monthly", payment_info=PaymentData(amount=Decimal("15"))
        )

        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.TRIAL
        assert subscription.trial_end_date == now + timedelta(days=14)
        assert subscription.next_billing_date == datetime(2024, 2, 29, 12, 0, tzinfo=UTC)
        assert result.transaction is None
        assert gateway.charges == []
        assert "14-day trial" in result.message

    async def test_duplicate_active_subscription(self, service, seeded):
        await service.create_subscription("cust_1", "basic", "monthly")

        with pytest.raises(DuplicateSubscriptionError) as exc_info:
            await service.create_subscription("cust_1", "basic", "annual")

        assert exc_info.value.status_code == 409
        # Another plan, or another customer, is fine
        await service.create_subscription("cust_1", "pro", "monthly")
        await service.create_subscription("cust_2", "basic", "monthly")

    async def test_canceled_subscription_does_not_block(self, service, seeded):
        first = await service.create_subscription("cust_1", "basic", "monthly")
        await service.cancel(first.subscription.subscription_id, immediate=True)

        second = await service.create_subscription("cust_1", "basic", "monthly")

        assert second.subscription.subscription_id != first.subscription.subscription_id

    async def test_missing_customer_and_plan(self, service, seeded):
        with pytest.raises(CustomerNotFoundError):
            await service.create_subscription("cust_missing", "basic", "monthly")
        with pytest.raises(PlanNotFoundError):
            await service.create_subscription("cust_1", "platinum", "monthly")

    async def test_invalid_input(self, service, seeded):
        with pytest.raises(SubscriptionValidationError, match="not available"):
            await service.create_subscription("cust_1", "legacy", "monthly")
        with pytest.raises(SubscriptionValidationError, match="weekly"):
            await service.create_subscription("cust_1", "basic", "weekly")
        with pytest.raises(SubscriptionValidationError, match="timezone-aware"):
            await service.create_subscription(
                "cust_1", "basic", "monthly", start_date=datetime(2024, 1, 1)
            )

    async def test_custom_recorder_receives_summary(
        self, uow_factory, seeded, billing_config, clock
    ):
        recorder = AsyncMock()
        recorder.create_subscription_transaction.return_value = TransactionRecord(
            subscription_id="sub_x",
            customer_id="cust_1",
            plan_id="pro",
            amount=Decimal("200.00"),
            transaction_type=TransactionType.NEW,
        )
        service = SubscriptionLifecycleService(
            uow_factory=uow_factory, recorder=recorder, config=billing_config, clock=clock
        )

        await service.create_subscription(
            "cust_1", "pro", "annual", payment_info=PaymentData(amount=Decimal("200.00"))
        )

        recorder.create_subscription_transaction.assert_awaited_once()
        _, payment_data, summary, customer = recorder.create_subscription_transaction.call_args.args
        assert summary.plan_id == "pro"
        assert summary.plan_name == "Pro"
        assert summary.amount == Decimal("200.00")
        assert summary.transaction_type == TransactionType.NEW
        assert payment_data.amount == Decimal("200.00")
        assert customer.customer_id == "cust_1"


class TestRenew:
    async def test_renewal_advances_period(self, service, seeded, clock, gateway):
        created = await service.create_subscription("cust_1", "basic", "monthly", start_date=JAN_1)
        subscription_id = created.subscription.subscription_id

        clock.set(datetime(2024, 2, 1, tzinfo=UTC))
        result = await service.renew(subscription_id, PaymentData(amount=Decimal("10.00")))

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.billing_attempts == 0
        assert result.subscription.last_billing_date == datetime(2024, 2, 1, tzinfo=UTC)
        assert result.subscription.next_billing_date == datetime(2024, 3, 1, tzinfo=UTC)
        assert result.transaction.transaction_type == TransactionType.RENEWAL

        transactions = await _transactions(seeded, subscription_id)
        assert [t.transaction_type for t in transactions] == [TransactionType.RENEWAL]

    async def test_past_due_renewal_clears_attempts(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        await service.record_payment_failure(subscription_id, Decimal("10.00"), "card_declined")

        result = await service.renew(subscription_id)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.billing_attempts == 0
        assert result.transaction is None

    async def test_declined_renewal_leaves_ledger_unchanged(self, service, seeded, gateway):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        gateway.decline_reason = "insufficient_funds"

        with pytest.raises(PaymentFailedError) as exc_info:
            await service.renew(subscription_id, PaymentData(amount=Decimal("10.00")))

        assert exc_info.value.reason == "insufficient_funds"
        stored = await service.get_subscription(subscription_id)
        assert stored.next_billing_date == created.subscription.next_billing_date
        assert stored.last_billing_date is None
        assert await _transactions(seeded, subscription_id) == []

    async def test_payment_timeout(self, uow_factory, seeded, gateway, billing_config, clock):
        from subledger.billing.subscriptions.recorder import LedgerTransactionRecorder

        config = billing_config.model_copy(
            update={"payment": billing_config.payment.model_copy(update={"timeout_seconds": 0.05})}
        )
        service = SubscriptionLifecycleService(
            uow_factory=uow_factory,
            recorder=LedgerTransactionRecorder(gateway),
            config=config,
            clock=clock,
        )
        created = await service.create_subscription("cust_1", "basic", "monthly")
        gateway.delay = 0.5

        with pytest.raises(PaymentFailedError) as exc_info:
            await service.renew(
                created.subscription.subscription_id, PaymentData(amount=Decimal("10.00"))
            )

        assert exc_info.value.reason == "timeout"
        assert exc_info.value.error_code == "PAYMENT_FAILED"

    async def test_canceled_subscription_cannot_renew(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        await service.cancel(created.subscription.subscription_id, immediate=True)

        with pytest.raises(SubscriptionStateError):
            await service.renew(created.subscription.subscription_id)

    async def test_renew_if_due_skips_rows_not_due(self, service, seeded, clock, gateway):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        assert await service.renew_if_due(subscription_id) is None

        clock.set(created.subscription.next_billing_date)
        result = await service.renew_if_due(subscription_id)

        assert result is not None
        assert gateway.charges == [(Decimal("10.00"), "USD")]
        # Already advanced, so a second pass is a no-op
        assert await service.renew_if_due(subscription_id) is None


class TestCancel:
    async def test_immediate_cancel(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        result = await service.cancel(
            subscription_id, reason="fraud", note="chargeback pattern", immediate=True
        )

        assert result.immediate is True
        assert result.subscription.status == SubscriptionStatus.CANCELED
        assert result.subscription.auto_renew is False
        assert result.subscription.cancellation_reason == CancellationReason.FRAUD

        customer = await _customer(seeded)
        assert customer.subscription_status == SubscriptionStatus.CANCELED

        with pytest.raises(SubscriptionAlreadyCanceledError):
            await service.cancel(subscription_id)

    async def test_cancel_defaults_to_end_of_period(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")

        result = await service.cancel(created.subscription.subscription_id)

        assert result.immediate is False
        assert result.effective_date == created.subscription.next_billing_date
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.auto_renew is False

    async def test_future_cancellation_is_persisted(self, service, seeded, now):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        effective = now + timedelta(days=1)

        await service.cancel(subscription_id, effective_date=effective, created_by="support")

        stored = await service.get_subscription(subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.auto_renew is False
        assert stored.end_date == effective
        change = stored.pending_change(ScheduledChangeType.CANCELLATION)
        assert change.effective_date == effective
        assert change.created_by == "support"

    async def test_unknown_reason(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")

        with pytest.raises(SubscriptionValidationError, match="cancellation reason"):
            await service.cancel(created.subscription.subscription_id, reason="bored")

    async def test_withdraw_scheduled_cancellation(self, service, seeded, now):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        await service.cancel(subscription_id, effective_date=now + timedelta(days=3))

        result = await service.cancel_scheduled_change(subscription_id, "cancellation")

        assert result.subscription.auto_renew is True
        assert result.subscription.end_date is None
        assert not result.subscription.has_scheduled_cancellation

    async def test_missing_subscription(self, service, seeded):
        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            await service.cancel("sub_missing")

        assert exc_info.value.to_dict()["error_code"] == "SUBSCRIPTION_NOT_FOUND"


class TestPlanChanges:
    async def test_upgrade_at_midpoint_charges_difference(self, service, seeded, clock, gateway):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        clock.advance(days=16)

        result = await service.upgrade(
            subscription_id, "pro", payment_data=PaymentData(payment_method="card")
        )

        assert result.timing == ChangeTiming.IMMEDIATE
        assert result.proration.remaining_days == 15
        assert result.immediate_charge == Decimal("5.00")
        assert result.prorated_credit == Decimal("5.00")
        assert result.subscription.plan_id == "pro"
        assert result.subscription.current_price == Decimal("20.00")
        assert result.subscription.prorated_credits == Decimal("5.00")
        assert result.transaction.transaction_type == TransactionType.UPGRADE
        assert gateway.charges == [(Decimal("5.00"), "USD")]

        customer = await _customer(seeded)
        assert customer.subscription_plan_id == "pro"

    async def test_upgrade_without_payment_data_swaps_plan_only(self, service, seeded, clock):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        clock.advance(days=16)

        result = await service.upgrade(created.subscription.subscription_id, "pro")

        assert result.transaction is None
        assert result.subscription.plan_id == "pro"

    async def test_declined_upgrade_leaves_ledger_unchanged(self, service, seeded, clock, gateway):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        clock.advance(days=16)
        gateway.decline_reason = "card_declined"

        with pytest.raises(PaymentFailedError):
            await service.upgrade(subscription_id, "pro", payment_data=PaymentData())

        stored = await service.get_subscription(subscription_id)
        assert stored.plan_id == "basic"
        assert stored.current_price == Decimal("10.00")
        assert stored.prorated_credits == Decimal("0")

    async def test_upgrade_requires_active_subscription(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        await service.pause(subscription_id)

        with pytest.raises(SubscriptionNotUpgradableError):
            await service.upgrade(subscription_id, "pro")
        with pytest.raises(PlanNotFoundError):
            await service.upgrade(subscription_id, "platinum")

    async def test_immediate_downgrade_banks_credit(self, service, seeded, clock, gateway):
        created = await service.create_subscription("cust_1", "pro", "monthly")
        clock.advance(days=16)

        result = await service.downgrade(
            created.subscription.subscription_id, "basic", immediate=True, reason="cost_cutting"
        )

        assert result.timing == ChangeTiming.IMMEDIATE
        assert result.prorated_credit == Decimal("5.00")
        assert result.immediate_charge == Decimal("0")
        assert result.transaction is None
        assert result.subscription.plan_id == "basic"
        assert result.subscription.prorated_credits == Decimal("5.00")
        assert result.subscription.metadata["downgrade_reason"] == "cost_cutting"
        assert gateway.charges == []

    async def test_downgrade_is_deferred_by_default(self, service, seeded):
        created = await service.create_subscription("cust_1", "pro", "monthly")
        subscription_id = created.subscription.subscription_id

        result = await service.downgrade(subscription_id, "basic", created_by="user_1")

        assert result.timing == ChangeTiming.END_OF_PERIOD
        assert result.effective_date == created.subscription.next_billing_date
        assert result.subscription.plan_id == "pro"

        details = await service.get_subscription_details(subscription_id)
        assert len(details.scheduled_changes) == 1
        assert isinstance(details.scheduled_changes[0], PlanChange)
        assert details.scheduled_changes[0].new_plan_id == "basic"

        customer = await _customer(seeded)
        assert customer.subscription_plan_id == "pro"

    async def test_downgrade_policy_of_current_plan(self, service, seeded):
        created = await service.create_subscription("cust_1", "flex", "monthly")

        result = await service.downgrade(created.subscription.subscription_id, "basic")

        assert result.timing == ChangeTiming.IMMEDIATE
        assert result.subscription.plan_id == "basic"

    async def test_undo_scheduled_downgrade(self, service, seeded):
        created = await service.create_subscription("cust_1", "pro", "monthly")
        subscription_id = created.subscription.subscription_id
        await service.downgrade(subscription_id, "basic")

        await service.cancel_scheduled_change(subscription_id, ScheduledChangeType.PLAN_CHANGE)

        stored = await service.get_subscription(subscription_id)
        assert stored.pending_changes() == []
        assert stored.scheduled_changes[0].status == ScheduledChangeStatus.CANCELLED

        with pytest.raises(SubscriptionValidationError):
            await service.cancel_scheduled_change(subscription_id, "plan_change")
        with pytest.raises(SubscriptionValidationError, match="Unknown scheduled change type"):
            await service.cancel_scheduled_change(subscription_id, "refund")


class TestPauseResume:
    async def test_pause_then_resume(self, service, seeded, clock):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        paused = await service.pause(subscription_id, reason="travel")
        assert paused.subscription.status == SubscriptionStatus.PAUSED
        assert paused.subscription.auto_renew is False

        clock.advance(days=2)
        resumed = await service.resume(subscription_id)
        assert resumed.subscription.status == SubscriptionStatus.ACTIVE
        assert resumed.subscription.auto_renew is True
        assert resumed.subscription.resumed_at == clock.now

        with pytest.raises(SubscriptionStateError):
            await service.resume(subscription_id)

    async def test_auto_resume_from_paused_until(self, service, seeded, clock, now):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        await service.pause(subscription_id, paused_until=now + timedelta(days=5))

        assert await service.apply_scheduled_changes(subscription_id) == []

        clock.advance(days=5)
        applied = await service.apply_scheduled_changes(subscription_id)

        assert [change.change_type for change in applied] == ["resume"]
        stored = await service.get_subscription(subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.next_scheduled_change_at() is None

    async def test_scheduled_pause(self, service, seeded, clock, now):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        with pytest.raises(SubscriptionValidationError, match="future"):
            await service.schedule_pause(subscription_id, now)

        await service.schedule_pause(
            subscription_id,
            now + timedelta(days=3),
            reason="seasonal",
            paused_until=now + timedelta(days=30),
        )
        stored = await service.get_subscription(subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE

        clock.advance(days=3)
        await service.apply_scheduled_changes(subscription_id)

        stored = await service.get_subscription(subscription_id)
        assert stored.status == SubscriptionStatus.PAUSED
        assert stored.pause_reason == "seasonal"
        assert stored.paused_until == now + timedelta(days=30)
        assert stored.pending_change(ScheduledChangeType.RESUME) is not None


class TestScheduledChanges:
    async def test_stale_change_is_dropped(self, service, seeded, clock):
        created = await service.create_subscription("cust_1", "pro", "monthly")
        subscription_id = created.subscription.subscription_id
        await service.downgrade(subscription_id, "basic")
        await service.pause(subscription_id)

        clock.set(created.subscription.next_billing_date)
        applied = await service.apply_scheduled_changes(subscription_id)

        assert applied == []
        stored = await service.get_subscription(subscription_id)
        assert stored.plan_id == "pro"
        assert stored.scheduled_changes[0].status == ScheduledChangeStatus.CANCELLED
        assert stored.next_scheduled_change_at() is None

    async def test_list_with_due_changes(self, service, seeded, clock, now):
        first = await service.create_subscription("cust_1", "basic", "monthly")
        second = await service.create_subscription("cust_2", "basic", "monthly")
        await service.cancel(
            first.subscription.subscription_id, effective_date=now + timedelta(days=2)
        )
        await service.cancel(
            second.subscription.subscription_id, effective_date=now + timedelta(days=9)
        )

        clock.advance(days=3)
        due = await service.list_with_due_changes()

        assert [s.subscription_id for s in due] == [first.subscription.subscription_id]


class TestPaymentFailures:
    async def test_exhaustion_cancels_subscription(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        for _ in range(3):
            result = await service.record_payment_failure(subscription_id, Decimal("10.00"))
            assert result.subscription.status == SubscriptionStatus.PAST_DUE

        result = await service.record_payment_failure(subscription_id, Decimal("10.00"))

        assert result.subscription.status == SubscriptionStatus.CANCELED
        assert result.subscription.cancellation_reason == CancellationReason.PAYMENT_FAILED
        assert result.subscription.billing_attempts == 4
        assert "exhausted" in result.message

        customer = await _customer(seeded)
        assert customer.subscription_status == SubscriptionStatus.CANCELED

    async def test_exhaustion_can_suspend(self, uow_factory, seeded, billing_config, clock):
        config = billing_config.model_copy(
            update={
                "dunning": billing_config.dunning.model_copy(
                    update={"max_billing_attempts": 1, "final_status": "suspended"}
                )
            }
        )
        service = SubscriptionLifecycleService(uow_factory=uow_factory, config=config, clock=clock)
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        await service.record_payment_failure(subscription_id, Decimal("10.00"))
        result = await service.record_payment_failure(subscription_id, Decimal("10.00"))

        assert result.subscription.status == SubscriptionStatus.SUSPENDED
        assert result.subscription.auto_renew is False


class TestReads:
    async def test_due_for_renewal_window(self, service, add_subscription, now):
        tomorrow = await add_subscription(
            subscriber_id="cust_1", next_billing_date=now + timedelta(days=1)
        )
        await add_subscription(subscriber_id="cust_2", next_billing_date=now + timedelta(days=5))
        overdue = await add_subscription(
            subscriber_id="cust_3", next_billing_date=now - timedelta(days=1)
        )
        await add_subscription(
            subscriber_id="cust_1",
            plan_id="pro",
            next_billing_date=now,
            auto_renew=False,
        )
        await add_subscription(
            subscriber_id="cust_2",
            plan_id="pro",
            status=SubscriptionStatus.PAUSED,
            next_billing_date=now,
        )

        due = await service.get_due_for_renewal(3)

        assert [s.subscription_id for s in due] == [
            overdue.subscription_id,
            tomorrow.subscription_id,
        ]
        assert len(await service.get_due_for_renewal()) == 2
        assert [s.subscription_id for s in await service.get_due_for_renewal(0)] == [
            overdue.subscription_id
        ]

        with pytest.raises(SubscriptionValidationError):
            await service.get_due_for_renewal(-1)

    async def test_subscription_details(self, service, seeded, clock, now):
        created = await service.create_subscription("cust_1", "trial_plan", "annual")
        clock.advance(days=4)

        details = await service.get_subscription_details(created.subscription.subscription_id)

        assert details.is_active is True
        assert details.is_in_trial is True
        assert details.trial_days_remaining == 10
        assert details.age_in_days == 4
        assert details.mrr == Decimal("12.50")
        assert details.days_until_next_billing == (
            created.subscription.next_billing_date - clock.now
        ).days

    async def test_churn_risk_is_persisted(self, service, seeded, clock):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        for _ in range(3):
            await service.record_payment_failure(subscription_id, Decimal("10.00"))
        clock.advance(days=10)

        risk = await service.calculate_churn_risk(
            subscription_id, UserActivity(last_login_days=40, support_tickets=1)
        )

        assert risk.score == 70
        assert risk.level == ChurnRiskLevel.HIGH
        stored = await service.get_subscription(subscription_id)
        assert stored.churn_risk.score == 70
        assert stored.churn_risk.factors == ["payment_issues", "low_usage", "new_subscriber"]

    async def test_churn_risk_without_persisting(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        risk = await service.calculate_churn_risk(subscription_id, persist=False)

        assert risk.factors == ["new_subscriber"]
        stored = await service.get_subscription(subscription_id)
        assert stored.churn_risk.last_calculated is None


class TestUnitOfWork:
    async def test_external_unit_of_work_is_not_committed(self, service, seeded):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        async with seeded() as uow:
            await service.pause(subscription_id, uow=uow)
            inside = await uow.subscriptions.get(subscription_id)
            assert inside.status == SubscriptionStatus.PAUSED
            # Leaving without commit rolls back

        stored = await service.get_subscription(subscription_id)
        assert stored.status == SubscriptionStatus.ACTIVE

    async def test_external_unit_of_work_spans_operations(self, service, seeded):
        async with seeded() as uow:
            created = await service.create_subscription("cust_1", "basic", "monthly", uow=uow)
            await service.pause(created.subscription.subscription_id, uow=uow)
            await uow.commit()

        stored = await service.get_subscription(created.subscription.subscription_id)
        assert stored.status == SubscriptionStatus.PAUSED

    async def test_write_conflict_is_retried(self, service, seeded, monkeypatch):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id
        original_save = SqlAlchemySubscriptionLedger.save
        calls = []

        async def flaky_save(self, subscription):
            calls.append(subscription.subscription_id)
            if len(calls) == 1:
                raise StaleDataError("row was updated by another transaction")
            return await original_save(self, subscription)

        monkeypatch.setattr(SqlAlchemySubscriptionLedger, "save", flaky_save)

        result = await service.pause(subscription_id)

        assert len(calls) == 2
        assert result.subscription.status == SubscriptionStatus.PAUSED
        stored = await service.get_subscription(subscription_id)
        assert stored.status == SubscriptionStatus.PAUSED

    async def test_persistent_conflict_surfaces(self, service, seeded, monkeypatch):
        created = await service.create_subscription("cust_1", "basic", "monthly")
        subscription_id = created.subscription.subscription_id

        async def always_stale(self, subscription):
            raise StaleDataError("row was updated by another transaction")

        monkeypatch.setattr(SqlAlchemySubscriptionLedger, "save", always_stale)

        with pytest.raises(SubscriptionConcurrencyError) as exc_info:
            await service.pause(subscription_id)

        assert exc_info.value.status_code == 409
        assert exc_info.value.context["subscription_id"] == subscription_id


class TestAudit:
    async def test_transitions_emit_audit_events(self, service, seeded):
        with patch("subledger.billing.subscriptions.service.log_audit_event") as audit:
            created = await service.create_subscription("cust_1", "basic", "monthly")
            await service.cancel(created.subscription.subscription_id, immediate=True)

        actions = [call.kwargs["action"] for call in audit.call_args_list]
        assert actions == ["subscription.created", "subscription.canceled"]
        assert audit.call_args_list[0].kwargs["resource_id"] == created.subscription.subscription_id
        assert audit.call_args_list[0].kwargs["category"] == "billing"

    async def test_audit_can_be_disabled(self, uow_factory, seeded, billing_config, clock):
        config = billing_config.model_copy(update={"audit_log_enabled": False})
        service = SubscriptionLifecycleService(uow_factory=uow_factory, config=config, clock=clock)

        with patch("subledger.billing.subscriptions.service.log_audit_event") as audit:
            await service.create_subscription("cust_1", "basic", "monthly")

        audit.assert_not_called()
