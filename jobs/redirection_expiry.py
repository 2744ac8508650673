"""
Redirection Expiry Job
Periodic sweep moving unresolved redirection codes past their expiry to EXPIRED
"""

import logging
from datetime import datetime
from typing import Optional

from config import Config
from services.redirection_engine import RedirectionEngine

logger = logging.getLogger(__name__)


def expire_stale_redirections_job(redirection_engine: RedirectionEngine, now: Optional[datetime] = None) -> int:
    """
    Expire stale codes and drop expired cache entries.
    Failures are logged and retried on the next run.
    """
    try:
        logger.info("⌛ REDIRECTION_SWEEP: Starting scheduled expiry sweep...")
        expired_count = redirection_engine.expire_stale_redirections(now=now)
        purged = redirection_engine.address_cache.purge_expired()

        if expired_count > 0:
            logger.info(f"✅ REDIRECTION_SWEEP: Expired {expired_count} stale codes, purged {purged} cache entries")
        else:
            logger.info("✅ REDIRECTION_SWEEP: No stale codes to expire")
        return expired_count

    except Exception as e:
        logger.error(f"❌ REDIRECTION_SWEEP: Sweep failed - {e}")
        return 0


def schedule_redirection_expiry(scheduler, redirection_engine: RedirectionEngine) -> None:
    """Register the sweep on an APScheduler scheduler"""
    minutes = max(1, Config.REDIRECTION_SWEEP_INTERVAL_MINUTES)
    scheduler.add_job(
        expire_stale_redirections_job,
        trigger='interval',
        minutes=minutes,
        args=[redirection_engine],
        id='redirection_expiry_sweep',
        name='⌛ Redirection Expiry Sweep - Expire Unresolved Codes',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info(f"✅ Scheduled redirection expiry sweep (every {minutes} minutes)")
