"""
Negotiation Expiry Job
Sweeps pending proposals past their expires_at into 'expired'
"""

import logging
from datetime import datetime
from typing import Optional

from config import Config
from services.negotiation_engine import NegotiationEngine

logger = logging.getLogger(__name__)


async def expire_stale_negotiations(engine: NegotiationEngine, now: Optional[datetime] = None) -> int:
    """
    Expire every pending negotiation whose deadline has passed.
    Runs on an interval; a failed sweep is logged and retried on the next tick.
    """
    try:
        logger.info("🧹 NEGOTIATION_EXPIRY: Starting sweep...")
        expired_count = await engine.expire_stale(now=now)

        if expired_count > 0:
            logger.info(f"✅ NEGOTIATION_EXPIRY: Expired {expired_count} stale proposals")
        else:
            logger.info("✅ NEGOTIATION_EXPIRY: No stale proposals")
        return expired_count

    except Exception as e:
        logger.error(f"❌ NEGOTIATION_EXPIRY: Sweep failed - {e}", exc_info=True)
        return 0


def schedule_negotiation_expiry(scheduler, engine: NegotiationEngine):
    """Register the expiry sweep on an APScheduler instance"""
    scheduler.add_job(
        expire_stale_negotiations,
        trigger='interval',
        minutes=Config.NEGOTIATION_SWEEP_MINUTES,
        args=[engine],
        id='negotiation_expiry_sweep',
        name='🧹 Negotiation Expiry - Expire Stale Proposals',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"✅ Scheduled negotiation expiry sweep (every {Config.NEGOTIATION_SWEEP_MINUTES} minutes)")
