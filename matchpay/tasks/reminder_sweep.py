"""
matchpay/tasks/reminder_sweep.py
Periodic sweep: fire due reminders, expire payment windows, retry settlements
"""

import logging
import asyncio
from typing import Any, Dict

from matchpay.services.container import ServiceContainer

logger = logging.getLogger(__name__)


async def run_sweep_once(services: ServiceContainer) -> Dict[str, Any]:
    """
    Run a single sweep cycle. Each step runs even if an earlier one failed.

    Reminders fire first so participants get their deadline-reached event
    and the deadline handler hard-locks the match. Window expiry then only
    catches matches that had no active reminders left.
    """
    summary: Dict[str, Any] = {}

    try:
        summary["reminders"] = await services.scheduler.fire_due()
    except Exception as e:
        logger.error(f"Reminder sweep failed: {str(e)}", exc_info=True)
        summary["reminders"] = {}

    try:
        summary["expired_windows"] = await services.match_payments.expire_due_windows()
    except Exception as e:
        logger.error(f"Window expiry sweep failed: {str(e)}", exc_info=True)
        summary["expired_windows"] = []

    try:
        summary["settlements"] = await services.match_payments.settle_pending()
    except Exception as e:
        logger.error(f"Settlement retry failed: {str(e)}", exc_info=True)
        summary["settlements"] = {}

    return summary


async def sweep_loop(services: ServiceContainer, interval_seconds: int = 60):
    """
    Background sweep loop.
    Runs every interval_seconds (default 1 minute).
    """
    logger.info(f"Starting reminder sweep loop with interval {interval_seconds}s")

    while True:
        try:
            await run_sweep_once(services)
        except Exception as e:
            logger.error(f"Sweep loop error: {str(e)}")

        await asyncio.sleep(interval_seconds)


def start_sweep_task(services: ServiceContainer, interval_seconds: int = 60) -> asyncio.Task:
    """Start the sweep as a background task."""
    return asyncio.create_task(sweep_loop(services, interval_seconds))


if __name__ == "__main__":
    from matchpay.config.settings import settings
    from matchpay.database import AsyncSessionLocal, close_db, init_db
    from matchpay.integrations import build_notification_delivery, build_payment_capture
    from matchpay.services.container import build_services

    logging.basicConfig(level=settings.LOG_LEVEL)

    async def main():
        await init_db()
        services = build_services(AsyncSessionLocal, build_payment_capture(), build_notification_delivery())
        try:
            print(await run_sweep_once(services))
        finally:
            await services.close()
            await close_db()

    asyncio.run(main())
