"""
Celery tasks for the subscription ledger.
"""

import asyncio
from typing import Any

import structlog

from subledger.billing.subscriptions.scanner import RenewalScanner
from subledger.billing.subscriptions.service import SubscriptionLifecycleService
from subledger.celery_app import celery_app
from subledger.db import get_async_engine

logger = structlog.get_logger(__name__)


async def _run_renewal_scan() -> dict[str, Any]:
    scanner = RenewalScanner(SubscriptionLifecycleService())
    try:
        summary = await scanner.run()
    finally:
        # Pooled connections belong to this run's event loop
        await get_async_engine().dispose()
    result = summary.model_dump(mode="json")
    result["error_count"] = summary.error_count
    return result


@celery_app.task(name="subscriptions.run_renewal_scan")
def run_renewal_scan_task() -> dict[str, Any]:
    """Periodic task: scheduled changes, renewals and dunning retries."""
    result = asyncio.run(_run_renewal_scan())
    logger.info(
        "task.renewal_scan_completed",
        renewals_succeeded=result["renewals_succeeded"],
        payment_failures=result["payment_failures"],
        error_count=result["error_count"],
    )
    return result


__all__ = ["run_renewal_scan_task"]
