"""
Renewal and dunning scanner.

One batch pass over the ledger: apply due scheduled changes, renew what is
due, then retry failed payments. Every row is handled in its own unit of
work so one failure never stops the scan.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal

import structlog
from pydantic import BaseModel, ConfigDict, Field

from subledger.billing.dunning.models import DunningRunResult
from subledger.billing.dunning.service import DunningService
from subledger.billing.exceptions import PaymentFailedError
from subledger.billing.subscriptions.service import SubscriptionLifecycleService

logger = structlog.get_logger(__name__)


class ScanSummary(BaseModel):
    """Counts from one scanner pass."""

    model_config = ConfigDict()

    started_at: datetime
    finished_at: datetime | None = None
    scheduled_changes_applied: int = 0
    renewals_attempted: int = 0
    renewals_succeeded: int = 0
    renewals_skipped: int = 0
    payment_failures: int = 0
    dunning: DunningRunResult = Field(default_factory=DunningRunResult)
    errors: list[str] = Field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors) + len(self.dunning.errors)


class RenewalScanner:
    """Periodic driver for renewals, scheduled changes and dunning."""

    def __init__(
        self,
        lifecycle: SubscriptionLifecycleService,
        dunning: DunningService | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.dunning = dunning or DunningService(lifecycle)
        self.clock = clock or lifecycle.clock

    async def process_scheduled_changes(self, summary: ScanSummary) -> None:
        subscriptions = await self.lifecycle.list_with_due_changes()
        for subscription in subscriptions:
            try:
                applied = await self.lifecycle.apply_scheduled_changes(
                    subscription.subscription_id
                )
                summary.scheduled_changes_applied += len(applied)
            except Exception as exc:
                logger.exception(
                    "scanner.scheduled_changes_error",
                    subscription_id=subscription.subscription_id,
                )
                summary.errors.append(f"{subscription.subscription_id}: {exc}")

    async def process_renewals(self, summary: ScanSummary) -> None:
        due = await self.lifecycle.get_due_for_renewal(look_ahead_days=0)
        for subscription in due:
            summary.renewals_attempted += 1
            amount = Decimal(subscription.current_price)
            try:
                result = await self.lifecycle.renew_if_due(subscription.subscription_id)
            except PaymentFailedError as exc:
                summary.payment_failures += 1
                try:
                    await self.dunning.handle_renewal_failure(
                        subscription.subscription_id, amount, exc
                    )
                except Exception as dunning_exc:
                    logger.exception(
                        "scanner.payment_failure_record_error",
                        subscription_id=subscription.subscription_id,
                    )
                    summary.errors.append(f"{subscription.subscription_id}: {dunning_exc}")
                continue
            except Exception as exc:
                logger.exception(
                    "scanner.renewal_error", subscription_id=subscription.subscription_id
                )
                summary.errors.append(f"{subscription.subscription_id}: {exc}")
                continue

            if result is None:
                summary.renewals_skipped += 1
            else:
                summary.renewals_succeeded += 1

    async def process_dunning(self, summary: ScanSummary, now: datetime) -> None:
        summary.dunning = await self.dunning.process_due_retries(now)

    async def run(self, now: datetime | None = None) -> ScanSummary:
        """Run one full pass and return its summary."""
        summary = ScanSummary(started_at=now or self.clock())
        logger.info("scanner.run_started", started_at=summary.started_at)

        await self.process_scheduled_changes(summary)
        await self.process_renewals(summary)
        await self.process_dunning(summary, summary.started_at)

        summary.finished_at = self.clock()
        logger.info(
            "scanner.run_completed",
            scheduled_changes_applied=summary.scheduled_changes_applied,
            renewals_attempted=summary.renewals_attempted,
            renewals_succeeded=summary.renewals_succeeded,
            renewals_skipped=summary.renewals_skipped,
            payment_failures=summary.payment_failures,
            dunning_recovered=summary.dunning.recovered,
            errors=summary.error_count,
        )
        return summary
