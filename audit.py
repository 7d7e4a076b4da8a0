"""
Audit logging — records security-relevant events.

Events are written to both the audit_log table and structured logging.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import has_request_context, request

from database import get_db

logger = logging.getLogger(__name__)


def log_event(action: str, user_id: int | None = None, detail: str = "") -> None:
    """Insert an audit log entry and emit a structured log line."""
    if has_request_context():
        from helpers import get_client_ip
        ip = get_client_ip()
        ua = request.headers.get("User-Agent", "")
    else:
        ip, ua = "", ""
    now = datetime.now().isoformat()

    try:
        db = get_db()
        db.execute(
            "INSERT INTO audit_log (user_id, action, detail, ip_address, user_agent, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (user_id, action, detail, ip, ua, now),
        )
        db.commit()
    except Exception:
        logger.exception("Failed to write audit row for %s", action)

    logger.info("audit: %s user_id=%s detail=%s ip=%s", action, user_id, detail, ip)
