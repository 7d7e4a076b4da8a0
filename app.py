"""
Practice Exams Platform — Flask JSON API

Serves practice exam questions from GitHub-hosted markdown, gates anonymous
visitors behind a timed trial, and sells AI explanation tiers through Stripe.
"""

from __future__ import annotations

import hashlib
import os
from typing import Any

from dotenv import load_dotenv
from flask import Flask, Response, jsonify, request as flask_request
from flask_compress import Compress
from flask_wtf.csrf import CSRFError, CSRFProtect

import database
from auth import auth_bp, login_manager
from blueprints import register_blueprints
from extensions import limiter


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)

    # Load config
    from config import config_by_name
    if test_config is not None:
        app.config.from_object(config_by_name["testing"])
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config.get("SECRET_KEY", os.environ.get('SECRET_KEY', 'dev-key-change-in-production'))

    # CSRF protection (the Stripe webhook exempts itself)
    csrf = CSRFProtect(app)
    app.extensions["csrf"] = csrf

    # Response compression
    Compress(app)

    # Cache backend (Redis or in-memory fallback)
    from cache_backend import init_cache
    init_cache(app)

    # Structured logging
    from logging_config import init_logging
    init_logging(app)

    # Register database teardown
    database.init_app(app)

    # Rate limiter (disabled in testing)
    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    # Register auth blueprint and login manager
    app.register_blueprint(auth_bp)
    login_manager.init_app(app)

    # Register all application blueprints
    register_blueprints(app)

    @app.route("/api/csrf-token")
    def csrf_token() -> Any:
        from flask_wtf.csrf import generate_csrf
        return jsonify({"csrf_token": generate_csrf()})

    # JSON error bodies for a JSON API
    @app.errorhandler(CSRFError)
    def handle_csrf_error(e: CSRFError) -> tuple[Any, int]:
        return jsonify({"error": e.description}), 400

    @app.errorhandler(404)
    def handle_not_found(e) -> tuple[Any, int]:
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e) -> tuple[Any, int]:
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def handle_rate_limited(e) -> tuple[Any, int]:
        return jsonify({"error": f"Rate limit exceeded: {e.description}"}), 429

    @app.errorhandler(500)
    def handle_server_error(e) -> tuple[Any, int]:
        app.logger.exception("Unhandled error on %s", flask_request.path)
        return jsonify({"error": "Internal server error"}), 500

    # Security headers
    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # ETag support for JSON API responses
    @app.after_request
    def set_etag(response: Response) -> Response:
        if (
            flask_request.method == "GET"
            and response.status_code == 200
            and response.content_type
            and "application/json" in response.content_type
            and response.content_length
            and response.content_length < 1_048_576  # < 1 MB
        ):
            data = response.get_data()
            etag = '"' + hashlib.md5(data).hexdigest() + '"'
            response.headers["ETag"] = etag
            if_none_match = flask_request.headers.get("If-None-Match")
            if if_none_match and if_none_match == etag:
                response.status_code = 304
                response.set_data(b"")
        return response

    # Start centralized scheduler (trial expiry, cleanup, cache cleanup)
    # On Vercel, jobs are handled via the /api/cron endpoints
    if (
        app.config.get("SCHEDULER_ENABLED", True)
        and not app.config.get("TESTING")
        and not os.environ.get("VERCEL")
    ):
        from scheduler import init_scheduler
        init_scheduler(app)

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
