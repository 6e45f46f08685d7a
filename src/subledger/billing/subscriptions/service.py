"""
Subscription lifecycle service.

Orchestrates the transitions in ``lifecycle.py``: loads the subscription,
plan and customer through a unit of work, applies one transition, records
any charge, updates the customer projection and commits once. Write
conflicts on the versioned ledger row are retried with tenacity.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, TypeVar

import structlog
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from subledger.billing.config import BillingConfig, get_billing_config
from subledger.billing.exceptions import (
    CustomerNotFoundError,
    DuplicateSubscriptionError,
    PaymentFailedError,
    PlanNotFoundError,
    SubscriptionConcurrencyError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    SubscriptionValidationError,
)
from subledger.billing.subscriptions import lifecycle
from subledger.billing.subscriptions.churn import calculate_churn_risk
from subledger.billing.subscriptions.cycles import parse_billing_cycle
from subledger.billing.subscriptions.interfaces import (
    TransactionRecorder,
    UnitOfWork,
    UnitOfWorkFactory,
)
from subledger.billing.subscriptions.models import (
    BillingCycle,
    Cancellation,
    CancellationReason,
    CancellationResult,
    ChangeTiming,
    ChurnRisk,
    Customer,
    LifecycleResult,
    Pause,
    PaymentData,
    Plan,
    PlanChange,
    PlanChangeResult,
    Resume,
    ScheduledChangeType,
    Subscription,
    SubscriptionDetails,
    SubscriptionStatus,
    SubscriptionSummary,
    TransactionRecord,
    TransactionType,
    UserActivity,
    utcnow,
)
from subledger.billing.subscriptions.recorder import LedgerTransactionRecorder
from subledger.billing.subscriptions.repository import SqlAlchemyUnitOfWork
from subledger.logging import log_audit_event

logger = structlog.get_logger(__name__)

T = TypeVar("T")

AnyScheduledChange = PlanChange | Cancellation | Pause | Resume


def _require_aware(value: datetime | None, field: str) -> None:
    if value is not None and value.tzinfo is None:
        raise SubscriptionValidationError(
            f"{field} must be timezone-aware", field=field, value=value.isoformat()
        )


class SubscriptionLifecycleService:
    """Stateless lifecycle engine over an injectable unit of work.

    Every public operation accepts an optional externally owned ``uow``.
    Without one the service opens its own, commits at the single exit point
    and retries the whole operation on a write conflict.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory | None = None,
        recorder: TransactionRecorder | None = None,
        config: BillingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.uow_factory: UnitOfWorkFactory = uow_factory or SqlAlchemyUnitOfWork
        self.recorder: TransactionRecorder = recorder or LedgerTransactionRecorder()
        self.config = config or get_billing_config()
        self.clock = clock or utcnow

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _run(
        self,
        operation: str,
        work: Callable[[UnitOfWork], Awaitable[T]],
        uow: UnitOfWork | None = None,
        subscription_id: str | None = None,
    ) -> T:
        if uow is not None:
            return await work(uow)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.renewal.conflict_retry_attempts),
                wait=wait_exponential(multiplier=0.05, max=1),
                retry=retry_if_exception_type(StaleDataError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "subscription.write_conflict_retry",
                            operation=operation,
                            subscription_id=subscription_id,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    async with self.uow_factory() as own_uow:
                        result = await work(own_uow)
                        await own_uow.commit()
                        return result
        except StaleDataError as exc:
            logger.error(
                "subscription.write_conflict",
                operation=operation,
                subscription_id=subscription_id,
            )
            raise SubscriptionConcurrencyError(
                f"Subscription {subscription_id} was modified concurrently during {operation}",
                subscription_id=subscription_id,
            ) from exc
        raise RuntimeError("unreachable")  # pragma: no cover

    async def _load_subscription(self, uow: UnitOfWork, subscription_id: str) -> Subscription:
        subscription = await uow.subscriptions.get(subscription_id, for_update=True)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription

    async def _load_plan(self, uow: UnitOfWork, plan_id: str) -> Plan:
        plan = await uow.plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Plan {plan_id} not found", plan_id=plan_id)
        return plan

    async def _load_customer(self, uow: UnitOfWork, customer_id: str) -> Customer:
        customer = await uow.customers.get(customer_id)
        if customer is None:
            raise CustomerNotFoundError(
                f"Customer {customer_id} not found", customer_id=customer_id
            )
        return customer

    async def _charge(
        self,
        uow: UnitOfWork,
        subscription: Subscription,
        plan: Plan | None,
        customer: Customer,
        payment_data: PaymentData,
        amount: Decimal,
        transaction_type: TransactionType,
    ) -> TransactionRecord:
        summary = SubscriptionSummary(
            subscription_id=subscription.subscription_id,
            plan_id=subscription.plan_id,
            plan_name=plan.name if plan else subscription.plan_id,
            billing_cycle=subscription.billing_cycle,
            amount=amount,
            currency=payment_data.currency or subscription.currency,
            transaction_type=transaction_type,
        )
        timeout = self.config.payment.timeout_seconds
        try:
            record = await asyncio.wait_for(
                self.recorder.create_subscription_transaction(
                    uow, payment_data.model_copy(update={"amount": amount}), summary, customer
                ),
                timeout=timeout,
            )
        except TimeoutError as exc:
            logger.warning(
                "subscription.payment_timeout",
                subscription_id=subscription.subscription_id,
                amount=str(amount),
                timeout_seconds=timeout,
            )
            raise PaymentFailedError(
                f"Payment timed out after {timeout} seconds",
                subscription_id=subscription.subscription_id,
                amount=amount,
                reason="timeout",
            ) from exc

        subscription.total_paid += record.amount
        return record

    async def _sync_projection(
        self, uow: UnitOfWork, subscription: Subscription, plan: Plan | None = None
    ) -> None:
        fields: dict[str, Any] = {
            "subscription_status": subscription.status,
            "next_billing_date": subscription.next_billing_date,
            "last_billing_date": subscription.last_billing_date,
            "subscription_end_date": subscription.end_date,
        }
        if plan is not None:
            fields["subscription_plan_id"] = plan.plan_id
            fields["subscription_plan_name"] = plan.name
        await uow.customers.update_billing_projection(subscription.subscriber_id, **fields)

    def _audit(self, action: str, subscription: Subscription, **details: Any) -> None:
        if not self.config.audit_log_enabled:
            return
        log_audit_event(
            action=action,
            category="billing",
            user_id=subscription.subscriber_id,
            tenant_id=subscription.tenant_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            status=subscription.status.value,
            **details,
        )

    # ------------------------------------------------------------------
    # Create / renew
    # ------------------------------------------------------------------

    async def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        billing_cycle: BillingCycle | str,
        payment_info: PaymentData | None = None,
        start_date: datetime | None = None,
        uow: UnitOfWork | None = None,
    ) -> LifecycleResult:
        """Create a subscription in ``trial`` or ``active`` status."""
        cycle = parse_billing_cycle(billing_cycle)
        _require_aware(start_date, "start_date")

        async def work(uow: UnitOfWork) -> LifecycleResult:
            customer = await self._load_customer(uow, customer_id)
            plan = await self._load_plan(uow, plan_id)
            if not plan.is_active:
                raise SubscriptionValidationError(
                    f"Plan {plan_id} is not available for new subscriptions",
                    field="plan_id",
                    value=plan_id,
                )

            if await uow.subscriptions.find_overlapping(customer_id, plan_id):
                raise DuplicateSubscriptionError(
                    f"Customer {customer_id} already has an active subscription to {plan_id}",
                    customer_id=customer_id,
                    plan_id=plan_id,
                )

            start = start_date or self.clock()
            subscription = lifecycle.build_subscription(customer, plan, cycle, start)

            transaction = None
            if (
                subscription.status != SubscriptionStatus.TRIAL
                and payment_info is not None
                and payment_info.amount > 0
            ):
                transaction = await self._charge(
                    uow,
                    subscription,
                    plan,
                    customer,
                    payment_info,
                    payment_info.amount,
                    TransactionType.NEW,
                )
                subscription.last_billing_date = start

            await uow.subscriptions.add(subscription)
            await self._sync_projection(uow, subscription, plan)

            logger.info(
                "subscription.created",
                subscription_id=subscription.subscription_id,
                customer_id=customer_id,
                plan_id=plan_id,
                status=subscription.status.value,
                billing_cycle=cycle.value,
                next_billing_date=subscription.next_billing_date,
            )
            self._audit(
                "subscription.created",
                subscription,
                plan_id=plan_id,
                billing_cycle=cycle.value,
            )
            message = (
                f"Subscription created with {plan.trial_days}-day trial"
                if subscription.status == SubscriptionStatus.TRIAL
                else "Subscription created"
            )
            return LifecycleResult(
                subscription=subscription, transaction=transaction, message=message
            )

        return await self._run("create_subscription", work, uow)

    async def _renew_loaded(
        self,
        uow: UnitOfWork,
        subscription: Subscription,
        payment_data: PaymentData | None,
    ) -> LifecycleResult:
        now = self.clock()
        plan = await uow.plans.get(subscription.plan_id)
        lifecycle.apply_renewal(subscription, now)

        transaction = None
        if payment_data is not None and payment_data.amount > 0:
            customer = await self._load_customer(uow, subscription.subscriber_id)
            transaction = await self._charge(
                uow,
                subscription,
                plan,
                customer,
                payment_data,
                payment_data.amount,
                TransactionType.RENEWAL,
            )

        await uow.subscriptions.save(subscription)
        await self._sync_projection(uow, subscription, plan)

        logger.info(
            "subscription.renewed",
            subscription_id=subscription.subscription_id,
            next_billing_date=subscription.next_billing_date,
            amount=str(transaction.amount) if transaction else None,
        )
        self._audit(
            "subscription.renewed",
            subscription,
            next_billing_date=str(subscription.next_billing_date),
        )
        return LifecycleResult(
            subscription=subscription, transaction=transaction, message="Subscription renewed"
        )

    async def renew(
        self,
        subscription_id: str,
        payment_data: PaymentData | None = None,
        uow: UnitOfWork | None = None,
    ) -> LifecycleResult:
        """Advance the billing period; any failure aborts the whole renewal."""

        async def work(uow: UnitOfWork) -> LifecycleResult:
            subscription = await self._load_subscription(uow, subscription_id)
            return await self._renew_loaded(uow, subscription, payment_data)

        return await self._run("renew", work, uow, subscription_id)

    async def renew_if_due(
        self, subscription_id: str, uow: UnitOfWork | None = None
    ) -> LifecycleResult | None:
        """Renew at the current price, or return None if the row is no longer due.

        Due-ness is re-checked on the freshly loaded row so a second scanner
        picking up the same subscription does nothing.
        """

        async def work(uow: UnitOfWork) -> LifecycleResult | None:
            subscription = await self._load_subscription(uow, subscription_id)
            now = self.clock()
            if (
                subscription.status != SubscriptionStatus.ACTIVE
                or not subscription.auto_renew
                or subscription.next_billing_date is None
                or subscription.next_billing_date > now
            ):
                logger.debug("subscription.renewal_skipped", subscription_id=subscription_id)
                return None

            payment_data = PaymentData(
                amount=subscription.current_price, currency=subscription.currency
            )
            return await self._renew_loaded(uow, subscription, payment_data)

        return await self._run("renew_if_due", work, uow, subscription_id)

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel(
        self,
        subscription_id: str,
        reason: CancellationReason | str = CancellationReason.VOLUNTARY,
        note: str | None = None,
        effective_date: datetime | None = None,
        immediate: bool = False,
        created_by: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> CancellationResult:
        """Cancel now, or schedule the cancellation for its effective date."""
        try:
            cancellation_reason = CancellationReason(reason)
        except ValueError as exc:
            raise SubscriptionValidationError(
                f"Unknown cancellation reason: {reason}", field="reason", value=reason
            ) from exc
        _require_aware(effective_date, "effective_date")

        async def work(uow: UnitOfWork) -> CancellationResult:
            subscription = await self._load_subscription(uow, subscription_id)
            plan = await uow.plans.get(subscription.plan_id)
            now = self.clock()

            effective = lifecycle.resolve_cancellation_date(
                subscription, plan, now, effective_date=effective_date, immediate=immediate
            )
            took_effect = lifecycle.apply_cancellation(
                subscription,
                now,
                effective,
                reason=cancellation_reason,
                note=note,
                created_by=created_by,
            )

            await uow.subscriptions.save(subscription)
            await self._sync_projection(uow, subscription)

            logger.info(
                "subscription.canceled" if took_effect else "subscription.cancellation_scheduled",
                subscription_id=subscription_id,
                reason=cancellation_reason.value,
                effective_date=effective,
            )
            self._audit(
                "subscription.canceled",
                subscription,
                reason=cancellation_reason.value,
                effective_date=effective.isoformat(),
                immediate=took_effect,
                created_by=created_by,
            )
            return CancellationResult(
                subscription=subscription,
                effective_date=effective,
                immediate=took_effect,
                message=(
                    "Subscription canceled immediately"
                    if took_effect
                    else "Subscription scheduled for cancellation"
                ),
            )

        return await self._run("cancel", work, uow, subscription_id)

    # ------------------------------------------------------------------
    # Upgrade / downgrade
    # ------------------------------------------------------------------

    async def upgrade(
        self,
        subscription_id: str,
        new_plan_id: str,
        immediate: bool = False,
        payment_data: PaymentData | None = None,
        reason: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> PlanChangeResult:
        """Move to a higher plan, charging the prorated difference when immediate."""

        async def work(uow: UnitOfWork) -> PlanChangeResult:
            subscription = await self._load_subscription(uow, subscription_id)
            current_plan = await uow.plans.get(subscription.plan_id)
            new_plan = await self._load_plan(uow, new_plan_id)
            now = self.clock()
            from_plan_id = subscription.plan_id

            proration = lifecycle.apply_upgrade(
                subscription, current_plan, new_plan, now, immediate=immediate, reason=reason
            )
            immediate_charge = proration.immediate_charge if proration else Decimal("0")

            transaction = None
            if immediate_charge > 0 and payment_data is not None:
                customer = await self._load_customer(uow, subscription.subscriber_id)
                transaction = await self._charge(
                    uow,
                    subscription,
                    new_plan,
                    customer,
                    payment_data,
                    immediate_charge,
                    TransactionType.UPGRADE,
                )

            await uow.subscriptions.save(subscription)
            await self._sync_projection(uow, subscription, new_plan)

            logger.info(
                "subscription.upgraded",
                subscription_id=subscription_id,
                from_plan=from_plan_id,
                to_plan=new_plan_id,
                immediate_charge=str(immediate_charge),
                prorated_credit=str(proration.credit) if proration else "0",
            )
            self._audit(
                "subscription.upgraded",
                subscription,
                from_plan=from_plan_id,
                to_plan=new_plan_id,
                immediate_charge=str(immediate_charge),
            )
            return PlanChangeResult(
                subscription=subscription,
                transaction=transaction,
                message="Subscription upgraded successfully",
                from_plan_id=from_plan_id,
                to_plan_id=new_plan_id,
                timing=lifecycle.upgrade_timing(new_plan, immediate),
                effective_date=now,
                proration=proration,
                immediate_charge=immediate_charge,
                prorated_credit=proration.credit if proration else Decimal("0"),
            )

        return await self._run("upgrade", work, uow, subscription_id)

    async def downgrade(
        self,
        subscription_id: str,
        new_plan_id: str,
        immediate: bool = False,
        reason: str | None = None,
        created_by: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> PlanChangeResult:
        """Move to a lower plan now or at the end of the period; never charges."""

        async def work(uow: UnitOfWork) -> PlanChangeResult:
            subscription = await self._load_subscription(uow, subscription_id)
            current_plan = await uow.plans.get(subscription.plan_id)
            new_plan = await self._load_plan(uow, new_plan_id)
            now = self.clock()
            from_plan_id = subscription.plan_id

            timing = lifecycle.downgrade_timing(current_plan, immediate)
            proration = None
            prorated_credit = Decimal("0")
            if timing == ChangeTiming.IMMEDIATE or subscription.next_billing_date is None:
                timing = ChangeTiming.IMMEDIATE
                proration = lifecycle.apply_immediate_downgrade(
                    subscription, current_plan, new_plan, now
                )
                prorated_credit = proration.net_credit
                effective_date = now
                projection_plan = new_plan
            else:
                change = lifecycle.schedule_downgrade(
                    subscription, current_plan, new_plan, now, created_by=created_by
                )
                effective_date = change.effective_date
                projection_plan = None

            if reason:
                subscription.metadata["downgrade_reason"] = reason

            await uow.subscriptions.save(subscription)
            await self._sync_projection(uow, subscription, projection_plan)

            logger.info(
                "subscription.downgraded",
                subscription_id=subscription_id,
                from_plan=from_plan_id,
                to_plan=new_plan_id,
                timing=timing.value,
                effective_date=effective_date,
            )
            self._audit(
                "subscription.downgraded",
                subscription,
                from_plan=from_plan_id,
                to_plan=new_plan_id,
                timing=timing.value,
                created_by=created_by,
            )
            return PlanChangeResult(
                subscription=subscription,
                message=(
                    "Subscription downgraded immediately"
                    if timing == ChangeTiming.IMMEDIATE
                    else "Subscription scheduled for downgrade"
                ),
                from_plan_id=from_plan_id,
                to_plan_id=new_plan_id,
                timing=timing,
                effective_date=effective_date,
                proration=proration,
                prorated_credit=prorated_credit,
            )

        return await self._run("downgrade", work, uow, subscription_id)

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    async def pause(
        self,
        subscription_id: str,
        reason: str | None = None,
        paused_until: datetime | None = None,
        uow: UnitOfWork | None = None,
    ) -> LifecycleResult:
        _require_aware(paused_until, "paused_until")

        async def work(uow: UnitOfWork) -> LifecycleResult:
            subscription = await self._load_subscription(uow, subscription_id)
            lifecycle.apply_pause(subscription, self.clock(), reason, paused_until)

            await uow.subscriptions.save(subscription)
            await self._sync_projection(uow, subscription)

            logger.info(
                "subscription.paused",
                subscription_id=subscription_id,
                reason=reason,
                paused_until=paused_until,
            )
            self._audit("subscription.paused", subscription, reason=reason)
            return LifecycleResult(subscription=subscription, message="Subscription paused")

        return await self._run("pause", work, uow, subscription_id)

    async def schedule_pause(
        self,
        subscription_id: str,
        pause_at: datetime,
        reason: str | None = None,
        paused_until: datetime | None = None,
        created_by: str | None = None,
        uow: UnitOfWork | None = None,
    ) -> LifecycleResult:
        """Queue a pause for the scanner to apply at ``pause_at``."""
        _require_aware(pause_at, "pause_at")
        _require_aware(paused_until, "paused_until")

        async def work(uow: UnitOfWork) -> LifecycleResult:
            subscription = await self._load_subscription(uow, subscription_id)
            now = self.clock()
            if pause_at <= now:
                raise SubscriptionValidationError(
                    "pause_at must be in the future", field="pause_at", value=pause_at.isoformat()
                )
            lifecycle.build_scheduled_pause(
                subscription, pause_at, now, reason, paused_until, created_by
            )

            await uow.subscriptions.save(subscription)

            logger.info(
                "subscription.pause_scheduled", subscription_id=subscription_id, pause_at=pause_at
            )
            self._audit("subscription.pause_scheduled", subscription, pause_at=pause_at.isoformat())
            return LifecycleResult(subscription=subscription, message="Pause scheduled")

        return await self._run("schedule_pause", work, uow, subscription_id)

    async def resume(self, subscription_id: str, uow: UnitOfWork | None = None) -> LifecycleResult:
        async def work(uow: UnitOfWork) -> LifecycleResult:
            subscription = await self._load_subscription(uow, subscription_id)
            lifecycle.apply_resume(subscription, self.clock())

            await uow.subscriptions.save(subscription)
            await self._sync_projection(uow, subscription)

            logger.info(
                "subscription.resumed",
                subscription_id=subscription_id,
                next_billing_date=subscription.next_billing_date,
            )
            self._audit("subscription.resumed", subscription)
            return LifecycleResult(subscription=subscription, message="Subscription resumed")

        return await self._run("resume", work, uow, subscription_id)

    # ------------------------------------------------------------------
    # Scheduled changes
    # ------------------------------------------------------------------

    async def cancel_scheduled_change(
        self,
        subscription_id: str,
        change_type: ScheduledChangeType | str,
        uow: UnitOfWork | None = None,
    ) -> LifecycleResult:
        """Withdraw a pending scheduled change (e.g. undo a scheduled downgrade)."""
        try:
            kind = ScheduledChangeType(change_type)
        except ValueError as exc:
            raise SubscriptionValidationError(
                f"Unknown scheduled change type: {change_type}",
                field="change_type",
                value=change_type,
            ) from exc

        async def work(uow: UnitOfWork) -> LifecycleResult:
            subscription = await self._load_subscription(uow, subscription_id)
            lifecycle.cancel_scheduled_change(subscription, kind, self.clock())

            await uow.subscriptions.save(subscription)
            await self._sync_projection(uow, subscription)

            logger.info(
                "subscription.scheduled_change_cancelled",
                subscription_id=subscription_id,
                change_type=kind.value,
            )
            self._audit(
                "subscription.scheduled_change_cancelled", subscription, change_type=kind.value
            )
            return LifecycleResult(
                subscription=subscription, message=f"Scheduled {kind.value} cancelled"
            )

        return await self._run("cancel_scheduled_change", work, uow, subscription_id)

    async def _apply_change(
        self,
        uow: UnitOfWork,
        subscription: Subscription,
        change: AnyScheduledChange,
        now: datetime,
    ) -> Plan | None:
        """Apply one due entry; returns the new plan when the plan changed."""
        if isinstance(change, PlanChange):
            current_plan = await uow.plans.get(subscription.plan_id)
            new_plan = await self._load_plan(uow, change.new_plan_id)
            lifecycle.apply_plan_change(subscription, current_plan, new_plan, now)
            return new_plan
        if isinstance(change, Cancellation):
            lifecycle.apply_scheduled_cancellation(subscription, change, now)
        elif isinstance(change, Pause):
            lifecycle.apply_pause(
                subscription, now, change.description, change.until, change.created_by
            )
        elif isinstance(change, Resume):
            lifecycle.apply_resume(subscription, now)
        return None

    async def apply_scheduled_changes(
        self, subscription_id: str, uow: UnitOfWork | None = None
    ) -> list[AnyScheduledChange]:
        """Apply every due scheduled entry in ``scheduled_date`` order.

        An entry whose precondition no longer holds is marked cancelled and
        logged rather than failing the whole pass.
        """

        async def work(uow: UnitOfWork) -> list[AnyScheduledChange]:
            subscription = await self._load_subscription(uow, subscription_id)
            now = self.clock()
            due = lifecycle.due_changes(subscription, now)
            if not due:
                return []

            applied: list[AnyScheduledChange] = []
            projection_plan: Plan | None = None
            for change in due:
                if not change.is_pending:
                    continue
                lifecycle.mark_processed(change, now)
                try:
                    new_plan = await self._apply_change(uow, subscription, change, now)
                except (
                    SubscriptionStateError,
                    SubscriptionValidationError,
                    PlanNotFoundError,
                ) as exc:
                    lifecycle.mark_cancelled(change, now)
                    logger.warning(
                        "subscription.scheduled_change_dropped",
                        subscription_id=subscription_id,
                        change_id=change.change_id,
                        change_type=change.change_type,
                        error=exc.message,
                    )
                    continue

                projection_plan = new_plan or projection_plan
                applied.append(change)
                logger.info(
                    "subscription.scheduled_change_applied",
                    subscription_id=subscription_id,
                    change_id=change.change_id,
                    change_type=change.change_type,
                )
                self._audit(
                    "subscription.scheduled_change_applied",
                    subscription,
                    change_id=change.change_id,
                    change_type=change.change_type,
                )

            await uow.subscriptions.save(subscription)
            await self._sync_projection(uow, subscription, projection_plan)
            return applied

        return await self._run("apply_scheduled_changes", work, uow, subscription_id)

    # ------------------------------------------------------------------
    # Dunning hook
    # ------------------------------------------------------------------

    async def record_payment_failure(
        self,
        subscription_id: str,
        amount: Decimal,
        reason: str | None = None,
        uow: UnitOfWork | None = None,
        exhaust: bool = False,
    ) -> LifecycleResult:
        """Count a failed renewal; moves to the final status once exhausted.

        ``exhaust`` applies the final status now; dunning passes it once the
        payment retries are used up.
        """

        async def work(uow: UnitOfWork) -> LifecycleResult:
            subscription = await self._load_subscription(uow, subscription_id)
            exhausted = lifecycle.apply_payment_failure(
                subscription,
                self.clock(),
                self.config.dunning.max_billing_attempts,
                SubscriptionStatus(self.config.dunning.final_status),
                exhaust=exhaust,
            )

            await uow.subscriptions.save(subscription)
            await self._sync_projection(uow, subscription)

            logger.warning(
                "subscription.payment_failed",
                subscription_id=subscription_id,
                amount=str(amount),
                reason=reason,
                billing_attempts=subscription.billing_attempts,
                status=subscription.status.value,
            )
            self._audit(
                "subscription.payment_failed",
                subscription,
                amount=str(amount),
                reason=reason,
                billing_attempts=subscription.billing_attempts,
            )
            message = (
                f"Billing attempts exhausted; subscription {subscription.status.value}"
                if exhausted
                else "Payment failure recorded"
            )
            return LifecycleResult(subscription=subscription, message=message)

        return await self._run("record_payment_failure", work, uow, subscription_id)

    # ------------------------------------------------------------------
    # Churn / reads
    # ------------------------------------------------------------------

    async def calculate_churn_risk(
        self,
        subscription_id: str,
        activity: UserActivity | None = None,
        persist: bool = True,
        uow: UnitOfWork | None = None,
    ) -> ChurnRisk:
        async def work(uow: UnitOfWork) -> ChurnRisk:
            subscription = await self._load_subscription(uow, subscription_id)
            risk = calculate_churn_risk(subscription, activity, self.clock())
            if persist:
                subscription.churn_risk = risk
                await uow.subscriptions.save(subscription)

            logger.info(
                "subscription.churn_risk_calculated",
                subscription_id=subscription_id,
                score=risk.score,
                level=risk.level.value,
                factors=risk.factors,
            )
            return risk

        return await self._run("calculate_churn_risk", work, uow, subscription_id)

    async def get_subscription(
        self, subscription_id: str, uow: UnitOfWork | None = None
    ) -> Subscription:
        async def work(uow: UnitOfWork) -> Subscription:
            subscription = await uow.subscriptions.get(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found", subscription_id=subscription_id
                )
            return subscription

        return await self._run("get_subscription", work, uow, subscription_id)

    async def get_subscription_details(
        self, subscription_id: str, uow: UnitOfWork | None = None
    ) -> SubscriptionDetails:
        subscription = await self.get_subscription(subscription_id, uow=uow)
        now = self.clock()
        return SubscriptionDetails(
            subscription=subscription,
            is_active=subscription.is_active(),
            is_in_trial=subscription.is_in_trial(now),
            trial_days_remaining=subscription.trial_days_remaining(now),
            mrr=subscription.mrr,
            age_in_days=subscription.age_in_days(now),
            days_until_next_billing=subscription.days_until_next_billing(now),
            scheduled_changes=subscription.pending_changes(),
        )

    async def get_due_for_renewal(
        self, look_ahead_days: int | None = None, uow: UnitOfWork | None = None
    ) -> list[Subscription]:
        """Active auto-renewing subscriptions billed within ``look_ahead_days``."""
        if look_ahead_days is None:
            look_ahead_days = self.config.renewal.look_ahead_days
        if look_ahead_days < 0:
            raise SubscriptionValidationError(
                "look_ahead_days cannot be negative", field="look_ahead_days", value=look_ahead_days
            )

        async def work(uow: UnitOfWork) -> list[Subscription]:
            cutoff = self.clock() + timedelta(days=look_ahead_days)
            return await uow.subscriptions.list_due_for_renewal(cutoff)

        return await self._run("get_due_for_renewal", work, uow)

    async def list_with_due_changes(self, uow: UnitOfWork | None = None) -> list[Subscription]:
        async def work(uow: UnitOfWork) -> list[Subscription]:
            return await uow.subscriptions.list_with_due_changes(self.clock())

        return await self._run("list_with_due_changes", work, uow)


__all__ = ["SubscriptionLifecycleService"]
