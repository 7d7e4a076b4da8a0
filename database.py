"""
SQLite database layer for the practice exams platform.

Uses raw sqlite3 with WAL mode and parameterized queries.
A schema_version table handles migrations.
"""

from __future__ import annotations

import fcntl
import sqlite3
from datetime import datetime
from pathlib import Path

from flask import current_app, g


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- Users
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT UNIQUE,
    password_hash TEXT,
    stripe_customer_id TEXT NOT NULL DEFAULT '',
    login_attempts INTEGER NOT NULL DEFAULT 0,
    locked_until TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT ''
);

-- Subscription records (one row per Stripe subscription, plus free rows)
CREATE TABLE IF NOT EXISTS subscriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    stripe_customer_id TEXT NOT NULL DEFAULT '',
    stripe_subscription_id TEXT NOT NULL DEFAULT '',
    stripe_price_id TEXT NOT NULL DEFAULT '',
    subscription_type TEXT NOT NULL DEFAULT 'free',
    subscription_status TEXT NOT NULL DEFAULT 'active',
    current_period_start INTEGER,
    current_period_end INTEGER,
    email TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_subscriptions_user_status ON subscriptions(user_id, subscription_status);
CREATE INDEX IF NOT EXISTS idx_subscriptions_stripe_id ON subscriptions(stripe_subscription_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_customer ON subscriptions(stripe_customer_id);

-- Explanation preferences + encrypted provider API keys
CREATE TABLE IF NOT EXISTS user_settings (
    user_id INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    explanation_provider TEXT NOT NULL DEFAULT 'ollama',
    openai_api_key TEXT NOT NULL DEFAULT '',
    gemini_api_key TEXT NOT NULL DEFAULT '',
    mistral_api_key TEXT NOT NULL DEFAULT '',
    deepseek_api_key TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL DEFAULT ''
);

-- Anonymous trial records
CREATE TABLE IF NOT EXISTS trials (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    ip_address TEXT NOT NULL,
    user_agent TEXT NOT NULL DEFAULT '',
    start_time INTEGER NOT NULL,
    end_time INTEGER NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    device_fingerprint TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_trials_session ON trials(session_id);
CREATE INDEX IF NOT EXISTS idx_trials_fingerprint ON trials(device_fingerprint);
CREATE INDEX IF NOT EXISTS idx_trials_ip ON trials(ip_address);
CREATE INDEX IF NOT EXISTS idx_trials_active ON trials(is_active, end_time);

-- Security audit trail
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER,
    action TEXT NOT NULL,
    detail TEXT NOT NULL DEFAULT '',
    ip_address TEXT NOT NULL DEFAULT '',
    user_agent TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id, created_at);
"""


MIGRATIONS: list[tuple[int, str]] = [
    # Version 1 = base schema.
    # -----------------------------------------------------------
    # Migration 2: Processed webhook events (idempotent Stripe delivery)
    (2, """
        CREATE TABLE IF NOT EXISTS stripe_events (
            event_id TEXT PRIMARY KEY,
            event_type TEXT NOT NULL,
            processed_at TEXT NOT NULL
        );
    """),
]


def get_db():
    """Return a DB connection from Flask g, creating if needed."""
    if "db" not in g:
        db_path = current_app.config.get("DATABASE", str(Path(__file__).parent / "practice_exams.db"))
        g.db = sqlite3.connect(db_path)
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA journal_mode=WAL")
        g.db.execute("PRAGMA foreign_keys=ON")
    return g.db


def close_db(e=None) -> None:
    """Teardown handler — close DB connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db() -> None:
    """Execute schema DDL to create all tables."""
    db = get_db()
    db.executescript(SCHEMA)
    row = db.execute("SELECT version FROM schema_version WHERE version = 1").fetchone()
    if not row:
        db.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (1, ?)",
            (datetime.now().isoformat(),),
        )
    db.commit()


def run_migrations() -> None:
    """Apply any unapplied versioned migrations.

    Uses file-based locking to prevent race conditions when multiple
    Gunicorn workers start simultaneously.
    """
    db_path = current_app.config.get("DATABASE", str(Path(__file__).parent / "practice_exams.db"))
    lock_file = None

    lock_path = Path(db_path).with_suffix(".migration.lock")
    try:
        lock_file = open(lock_path, "w")
        fcntl.flock(lock_file, fcntl.LOCK_EX)
    except OSError:
        lock_file = None

    try:
        db = get_db()
        applied = {
            row["version"]
            for row in db.execute("SELECT version FROM schema_version").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version not in applied:
                try:
                    db.executescript(sql)
                except sqlite3.OperationalError as e:
                    err_msg = str(e).lower()
                    if "duplicate column" not in err_msg and "already exists" not in err_msg:
                        raise
                db.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (version, datetime.now().isoformat()),
                )
                db.commit()
    finally:
        if lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def init_app(app) -> None:
    """Register teardown and auto-init on first request."""
    app.teardown_appcontext(close_db)

    @app.before_request
    def _ensure_db():
        if not getattr(app, "_db_initialized", False):
            init_db()
            run_migrations()
            app._db_initialized = True
