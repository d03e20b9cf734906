"""
Crash Recovery

Run once on application startup:
1. Release reminder leases held by a dead scheduler instance
2. Fire reminders that fell due while the service was down; deadline events
   hard-lock their matches
3. Hard-lock any remaining match whose payment window ended meanwhile
4. Retry refunds / top-ups that never reached the payment processor
"""
import logging
from typing import Any, Dict

from matchpay.services.container import ServiceContainer

logger = logging.getLogger(__name__)


async def startup_recovery(services: ServiceContainer) -> Dict[str, Any]:
    """
    Recover durable state after a restart.

    Failures are logged; startup continues.
    """
    logger.info("🔧 Crash recovery: starting...")
    summary: Dict[str, Any] = {
        "released_leases": 0, "reminders": {}, "expired_windows": [], "settlements": {},
    }

    try:
        summary["released_leases"] = await services.scheduler.release_stale_leases()
        summary["reminders"] = await services.scheduler.fire_due()
        summary["expired_windows"] = await services.match_payments.expire_due_windows()
        summary["settlements"] = await services.match_payments.settle_pending()
    except Exception as e:
        logger.error(f"❌ Crash recovery failed: {e}", exc_info=True)
        summary["status"] = "error"
        return summary

    closed = summary["reminders"].get("deadlines", 0) + len(summary["expired_windows"])
    if closed:
        logger.warning(f"⚠️ Crash recovery: closed {closed} overdue payment window(s)")
    logger.info(f"✅ Crash recovery complete: {summary}")
    summary["status"] = "ok"
    return summary
