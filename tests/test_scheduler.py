"""Tests for scheduler.py job registration and job bodies."""

from __future__ import annotations

from unittest.mock import patch

import pytest


@pytest.fixture
def scheduled_jobs(app):
    """Run init_scheduler against a patched BackgroundScheduler; returns {job_id: add_job kwargs}."""
    with patch("scheduler.BackgroundScheduler") as scheduler_cls:
        from scheduler import init_scheduler
        init_scheduler(app)
    instance = scheduler_cls.return_value
    instance.start.assert_called_once()
    return {call.kwargs["id"]: call.kwargs for call in instance.add_job.call_args_list}


def test_registers_jobs(scheduled_jobs):
    assert set(scheduled_jobs) == {"expire_trials", "trial_cleanup", "cache_cleanup"}
    assert scheduled_jobs["expire_trials"]["minutes"] == 5
    assert scheduled_jobs["trial_cleanup"]["trigger"] == "cron"
    assert scheduled_jobs["trial_cleanup"]["hour"] == 3


def test_expire_job_deactivates_trials(app, scheduled_jobs):
    from database import get_db
    from trial import now_ms

    db = get_db()
    past = now_ms() - 60_000
    db.execute(
        "INSERT INTO trials (id, session_id, ip_address, user_agent, start_time, end_time, is_active, device_fingerprint) "
        "VALUES ('t1', 's1', '10.0.0.1', 'UA', ?, ?, 1, 'fp1')",
        (past - 900_000, past),
    )
    db.commit()

    scheduled_jobs["expire_trials"]["func"]()
    assert db.execute("SELECT is_active FROM trials WHERE id = 't1'").fetchone()[0] == 0


def test_cleanup_job_logs_store_errors(app, scheduled_jobs):
    import sqlite3
    with patch("trial.cleanup_trials", side_effect=sqlite3.OperationalError("locked")):
        scheduled_jobs["trial_cleanup"]["func"]()


def test_cache_job(app, scheduled_jobs):
    from cache_backend import get_cache
    get_cache().set("stale", "x", ttl=0)
    scheduled_jobs["cache_cleanup"]["func"]()
