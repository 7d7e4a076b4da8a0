"""
Structured logging configuration.

- JSON format for production, text for development
- Every record carries the request id, user id and trial session of the
  request that emitted it
- Access line per request, echoed X-Request-ID
"""

from __future__ import annotations

import json
import logging
import time
import uuid

from flask import Flask, g, has_request_context, request, session

_CONTEXT_FIELDS = ("request_id", "user_id", "trial_session")


class RequestContextFilter(logging.Filter):
    """Stamp request context onto records; "-" outside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            record.request_id = getattr(g, "request_id", "-")
            record.user_id = getattr(g, "log_user_id", "-")
            record.trial_session = session.get("trial_session_id", "-")
        else:
            for name in _CONTEXT_FIELDS:
                setattr(record, name, "-")
        return True


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, "-")
            if value != "-":
                entry[name] = value
        if hasattr(record, "status"):
            entry["status"] = record.status
            entry["duration_ms"] = record.duration_ms
        if record.exc_info and record.exc_info[0]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _current_user_id() -> str:
    from flask_login import current_user
    return str(current_user.id) if current_user.is_authenticated else "anon"


def init_logging(app: Flask) -> None:
    """Configure logging based on app config."""
    log_level = app.config.get("LOG_LEVEL", "INFO")

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(RequestContextFilter())
    if app.config.get("LOG_FORMAT", "text") == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s [%(request_id)s user=%(user_id)s]: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
    root.addHandler(handler)

    for noisy in ("werkzeug", "urllib3", "stripe", "httpx", "openai", "apscheduler"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    @app.before_request
    def _attach_request_id():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.request_start = time.time()

    @app.after_request
    def _log_request(response):
        response.headers["X-Request-ID"] = getattr(g, "request_id", "-")
        g.log_user_id = _current_user_id()
        duration_ms = (time.time() - getattr(g, "request_start", time.time())) * 1000
        app.logger.info(
            "%s %s %s %.0fms trial=%s",
            request.method,
            request.path,
            response.status_code,
            duration_ms,
            session.get("trial_session_id", "-"),
            extra={"status": response.status_code, "duration_ms": round(duration_ms)},
        )
        return response
