"""Core routes: client IP, health checks, cron."""

from __future__ import annotations

import logging
import sqlite3
import time

logger = logging.getLogger(__name__)

from flask import Blueprint, current_app, jsonify, request

from helpers import get_client_ip

bp = Blueprint("core", __name__)


@bp.route("/api/get-ip")
def get_ip():
    return jsonify({"ip": get_client_ip()})


# ── Health checks ─────────────────────────────────────────

_start_time = time.time()


@bp.route("/health")
def health():
    uptime = int(time.time() - _start_time)
    return jsonify({"status": "ok", "uptime_seconds": uptime})


@bp.route("/ready")
def ready():
    try:
        from database import get_db
        db = get_db()
        db.execute("SELECT 1").fetchone()
        return jsonify({"status": "ready"}), 200
    except sqlite3.Error as exc:
        logger.error("Readiness check failed: %s", exc, exc_info=True)
        return jsonify({
            "status": "not_ready",
        }), 503


@bp.route("/live")
def live():
    return jsonify({"status": "alive"}), 200


# ── Cron Endpoints ────────────────────────────────────────
# For serverless deployments where the in-process scheduler doesn't run.
# Authenticated via CRON_SECRET header.

def _verify_cron_secret():
    """Verify the request carries a valid CRON_SECRET header."""
    expected = current_app.config.get("CRON_SECRET", "")
    if not expected:
        return False
    return request.headers.get("Authorization") == f"Bearer {expected}"


@bp.route("/api/cron/cleanup-trials", methods=["GET", "POST"])
def cron_cleanup_trials():
    if not _verify_cron_secret():
        return jsonify({"error": "Unauthorized"}), 401
    from trial import CLEANUP_MODES, TrialStoreDB, cleanup_trials, now_ms

    mode = request.args.get("mode", "expired")
    if mode not in CLEANUP_MODES:
        return jsonify({"error": f"Unknown cleanup mode: {mode}"}), 400
    try:
        at = now_ms()
        deactivated = TrialStoreDB().deactivate_expired(at)
        deleted = cleanup_trials(mode, at)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except sqlite3.Error as e:
        logger.error("Cron cleanup-trials failed: %s", e, exc_info=True)
        return jsonify({"error": "Cron job failed."}), 500
    return jsonify({"status": "ok", "job": "cleanup-trials", "mode": mode,
                    "deactivated": deactivated, "deleted": len(deleted)})


@bp.route("/api/cron/trial-stats")
def cron_trial_stats():
    if not _verify_cron_secret():
        return jsonify({"error": "Unauthorized"}), 401
    from trial import trial_stats
    return jsonify(trial_stats())
