"""
Centralized Scheduler — Registers all periodic background jobs.

Jobs:
  - Deactivate trials past their end time (every 5 minutes)
  - Delete expired and duplicate trial records (3 AM)
  - TTL cache cleanup (every 1 hour)
"""

from __future__ import annotations

import sqlite3

from apscheduler.schedulers.background import BackgroundScheduler


def init_scheduler(app) -> BackgroundScheduler:
    """Start a centralized background scheduler for all periodic jobs."""
    scheduler = BackgroundScheduler(daemon=True)

    # 1. Expire stale trials — every 5 minutes
    def _expire_stale_trials():
        with app.app_context():
            from trial import TrialStoreDB, now_ms
            try:
                count = TrialStoreDB().deactivate_expired(now_ms())
            except sqlite3.Error as e:
                app.logger.error("Trial expiry failed: %s", e)
                return
            if count:
                app.logger.info("Deactivated %d expired trials", count)

    scheduler.add_job(
        func=_expire_stale_trials,
        trigger="interval",
        minutes=5,
        id="expire_trials",
        replace_existing=True,
    )

    # 2. Trial record cleanup — cron at 3 AM
    def _cleanup_trials():
        with app.app_context():
            from trial import cleanup_trials
            try:
                expired = cleanup_trials("expired")
                duplicates = cleanup_trials("duplicates")
            except sqlite3.Error as e:
                app.logger.error("Trial cleanup failed: %s", e)
                return
            app.logger.info(
                "Trial cleanup: %d expired, %d duplicates removed", len(expired), len(duplicates),
            )

    scheduler.add_job(
        func=_cleanup_trials,
        trigger="cron",
        hour=3,
        id="trial_cleanup",
        replace_existing=True,
    )

    # 3. TTL cache cleanup — every 1 hour
    def _cleanup_cache():
        from cache_backend import get_cache
        removed = get_cache().cleanup()
        if removed:
            app.logger.debug("Cache cleanup removed %d entries", removed)

    scheduler.add_job(
        func=_cleanup_cache,
        trigger="interval",
        hours=1,
        id="cache_cleanup",
        replace_existing=True,
    )

    scheduler.start()
    app.logger.info("Centralized scheduler started (trial expiry, trial cleanup, cache cleanup)")
    return scheduler
