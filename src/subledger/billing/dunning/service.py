"""
Dunning service.

Opens failed-payment records when a renewal charge fails and retries them
with exponential backoff. Each due record is claimed with a compare-and-set
before the charge so two scanners never retry the same record.
"""

import random
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal

import structlog

from subledger.billing.config import BillingConfig
from subledger.billing.dunning.models import (
    DunningRunResult,
    FailedPayment,
    FailedPaymentStatus,
)
from subledger.billing.exceptions import (
    PaymentFailedError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from subledger.billing.subscriptions.interfaces import UnitOfWork, UnitOfWorkFactory
from subledger.billing.subscriptions.models import PaymentData, Subscription
from subledger.billing.subscriptions.service import SubscriptionLifecycleService

logger = structlog.get_logger(__name__)


class DunningService:
    """Failed-payment tracking and retry for subscription renewals."""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycleService,
        uow_factory: UnitOfWorkFactory | None = None,
        config: BillingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.uow_factory = uow_factory or lifecycle.uow_factory
        self.config = config or lifecycle.config
        self.clock = clock or lifecycle.clock
        self.rng = rng or random.Random()

    def next_retry_at(self, attempt_number: int, now: datetime | None = None) -> datetime:
        """
        When retry ``attempt_number`` (1-based) should run.

        The delay doubles per attempt from ``retry_base_days`` up to
        ``retry_max_days``, then gets +/- ``retry_jitter`` of random spread.
        """
        if attempt_number < 1:
            raise ValueError("attempt_number must be >= 1")

        payment = self.config.payment
        now = now or self.clock()
        days = min(payment.retry_base_days * 2 ** (attempt_number - 1), payment.retry_max_days)
        spread = self.rng.uniform(-payment.retry_jitter, payment.retry_jitter)
        return now + timedelta(days=days * (1 + spread))

    async def open_failed_payment(
        self,
        subscription: Subscription,
        amount: Decimal,
        reason: str | None,
        uow: UnitOfWork,
    ) -> FailedPayment:
        """Open (or refresh) the failed-payment record for ``subscription``."""
        now = self.clock()
        existing = await uow.failed_payments.find_open_for_subscription(
            subscription.subscription_id
        )
        if existing is not None:
            existing.reason = reason
            existing.last_attempt_at = now
            await uow.failed_payments.save(existing)
            return existing

        failed_payment = FailedPayment(
            tenant_id=subscription.tenant_id,
            customer_id=subscription.subscriber_id,
            subscription_id=subscription.subscription_id,
            amount=amount,
            currency=subscription.currency,
            reason=reason,
            attempts=0,
            next_retry=self.next_retry_at(1, now),
            status=FailedPaymentStatus.PENDING,
            last_attempt_at=now,
            created_at=now,
        )
        await uow.failed_payments.add(failed_payment)

        logger.info(
            "dunning.failed_payment_opened",
            failed_payment_id=failed_payment.failed_payment_id,
            subscription_id=subscription.subscription_id,
            amount=str(amount),
            next_retry=failed_payment.next_retry,
        )
        return failed_payment

    async def handle_renewal_failure(
        self, subscription_id: str, amount: Decimal, error: PaymentFailedError
    ) -> FailedPayment | None:
        """Record the failed renewal and open a retry record in one unit of work.

        Returns None when the failure exhausted dunning and no retry is due.
        """
        async with self.uow_factory() as uow:
            result = await self.lifecycle.record_payment_failure(
                subscription_id, amount, error.reason, uow=uow
            )
            failed_payment = None
            if not result.subscription.is_terminal and result.subscription.auto_renew:
                failed_payment = await self.open_failed_payment(
                    result.subscription, amount, error.reason, uow
                )
            await uow.commit()
        return failed_payment

    async def _claim(self, failed_payment: FailedPayment, now: datetime) -> bool:
        lease_until = now + timedelta(minutes=self.config.payment.retry_claim_minutes)
        async with self.uow_factory() as uow:
            claimed = await uow.failed_payments.claim(
                failed_payment.failed_payment_id,
                expected_attempts=failed_payment.attempts,
                expected_next_retry=failed_payment.next_retry,
                lease_until=lease_until,
            )
            await uow.commit()
        return claimed

    async def _retry(self, failed_payment: FailedPayment, now: datetime) -> FailedPaymentStatus:
        payment_data = PaymentData(amount=failed_payment.amount, currency=failed_payment.currency)
        try:
            async with self.uow_factory() as uow:
                await self.lifecycle.renew(
                    failed_payment.subscription_id, payment_data=payment_data, uow=uow
                )
                failed_payment.attempts += 1
                failed_payment.status = FailedPaymentStatus.RECOVERED
                failed_payment.recovered_at = now
                failed_payment.last_attempt_at = now
                failed_payment.next_retry = None
                await uow.failed_payments.save(failed_payment)
                await uow.commit()
        except PaymentFailedError as exc:
            return await self._record_failed_retry(failed_payment, now, exc)
        except (SubscriptionStateError, SubscriptionNotFoundError) as exc:
            # Subscription was canceled or removed meanwhile; nothing left to collect
            await self._close(failed_payment, now, exc.message)
            return FailedPaymentStatus.FAILED

        logger.info(
            "dunning.payment_recovered",
            failed_payment_id=failed_payment.failed_payment_id,
            subscription_id=failed_payment.subscription_id,
            attempts=failed_payment.attempts,
        )
        return FailedPaymentStatus.RECOVERED

    async def _record_failed_retry(
        self, failed_payment: FailedPayment, now: datetime, error: PaymentFailedError
    ) -> FailedPaymentStatus:
        async with self.uow_factory() as uow:
            failed_payment.attempts += 1
            failed_payment.reason = error.reason
            failed_payment.last_attempt_at = now

            retries_exhausted = failed_payment.attempts >= self.config.payment.max_retry_attempts
            if retries_exhausted:
                failed_payment.status = FailedPaymentStatus.FAILED
                failed_payment.next_retry = None
            else:
                failed_payment.status = FailedPaymentStatus.RETRYING
                failed_payment.next_retry = self.next_retry_at(failed_payment.attempts + 1, now)

            try:
                outcome = await self.lifecycle.record_payment_failure(
                    failed_payment.subscription_id,
                    failed_payment.amount,
                    error.reason,
                    uow=uow,
                    exhaust=retries_exhausted,
                )
                billable = outcome.subscription.auto_renew and not outcome.subscription.is_terminal
            except SubscriptionStateError:
                billable = False

            if not billable:
                failed_payment.status = FailedPaymentStatus.FAILED
                failed_payment.next_retry = None

            await uow.failed_payments.save(failed_payment)
            await uow.commit()

        logger.warning(
            "dunning.retry_failed",
            failed_payment_id=failed_payment.failed_payment_id,
            subscription_id=failed_payment.subscription_id,
            attempts=failed_payment.attempts,
            status=failed_payment.status.value,
            next_retry=failed_payment.next_retry,
            reason=error.reason,
        )
        return failed_payment.status

    async def _close(self, failed_payment: FailedPayment, now: datetime, reason: str) -> None:
        async with self.uow_factory() as uow:
            failed_payment.status = FailedPaymentStatus.FAILED
            failed_payment.next_retry = None
            failed_payment.last_attempt_at = now
            await uow.failed_payments.save(failed_payment)
            await uow.commit()

        logger.info(
            "dunning.failed_payment_closed",
            failed_payment_id=failed_payment.failed_payment_id,
            subscription_id=failed_payment.subscription_id,
            reason=reason,
        )

    async def process_due_retries(
        self, now: datetime | None = None, limit: int = 100
    ) -> DunningRunResult:
        """Retry every failed payment whose ``next_retry`` has arrived."""
        now = now or self.clock()
        result = DunningRunResult()

        async with self.uow_factory() as uow:
            due = await uow.failed_payments.list_due(now, limit=limit)

        for failed_payment in due:
            try:
                if not await self._claim(failed_payment, now):
                    result.skipped += 1
                    logger.debug(
                        "dunning.claim_lost", failed_payment_id=failed_payment.failed_payment_id
                    )
                    continue

                result.processed += 1
                status = await self._retry(failed_payment, now)
            except Exception as exc:
                # Lease expiry makes the record due again on a later pass
                logger.exception(
                    "dunning.retry_error",
                    failed_payment_id=failed_payment.failed_payment_id,
                    subscription_id=failed_payment.subscription_id,
                )
                result.errors.append(f"{failed_payment.failed_payment_id}: {exc}")
                continue

            if status == FailedPaymentStatus.RECOVERED:
                result.recovered += 1
            elif status == FailedPaymentStatus.FAILED:
                result.failed += 1
            else:
                result.retrying += 1

        logger.info(
            "dunning.run_completed",
            processed=result.processed,
            recovered=result.recovered,
            retrying=result.retrying,
            failed=result.failed,
            skipped=result.skipped,
            errors=len(result.errors),
        )
        return result
