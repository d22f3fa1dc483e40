"""
Background scheduler for badge reconciliation.
Recomputes every user's badge from unread counts on a fixed interval, repairing drift
left by redelivered or lost trigger events. One failing user never stops the sweep.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

import config
from badge_counter import recompute_badge

logger = logging.getLogger(__name__)

_scheduler = None


def run_badge_reconciliation(store) -> dict:
    """Recompute all badges. Returns counts for logging and tests."""
    try:
        user_ids = store.list_user_ids()
    except Exception as e:
        logger.exception("Badge reconciliation could not list users: %s", e)
        return {"users": 0, "failed": 0}
    failed = 0
    for uid in user_ids:
        try:
            recompute_badge(store, uid)
        except Exception as e:
            failed += 1
            logger.exception("Badge reconciliation failed for user %s: %s", uid, e)
    logger.info("Badge reconciliation done: users=%d failed=%d", len(user_ids), failed)
    return {"users": len(user_ids), "failed": failed}


def start_scheduler(store):
    """Start the background scheduler. Called from main.py on startup."""
    global _scheduler
    if _scheduler is not None:
        return _scheduler
    if config.BADGE_RECONCILE_INTERVAL_HOURS <= 0:
        logger.info("Badge reconciliation disabled")
        return None
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_badge_reconciliation,
        "interval",
        hours=config.BADGE_RECONCILE_INTERVAL_HOURS,
        args=[store],
        id="badge_reconciliation",
    )
    scheduler.start()
    _scheduler = scheduler
    logger.info("Badge reconciliation scheduler started (interval=%dh)", config.BADGE_RECONCILE_INTERVAL_HOURS)
    return scheduler


def stop_scheduler():
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
