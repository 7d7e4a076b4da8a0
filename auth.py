"""
User Authentication — Flask-Login blueprint.

Provides JSON register, login, logout and account routes.
Uses werkzeug.security for password hashing.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from flask import Blueprint, jsonify
from flask_login import LoginManager, UserMixin, login_required, login_user, logout_user, current_user
from werkzeug.security import generate_password_hash, check_password_hash

from audit import log_event
from database import get_db
from extensions import limiter
from helpers import json_body

LOCKOUT_THRESHOLD = 5
LOCKOUT_MINUTES = 15

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()


class User(UserMixin):
    """Wraps a DB user row for Flask-Login."""

    def __init__(self, id: int, name: str, email: str):
        self.id = id
        self.name = name
        self.email = email

    @staticmethod
    def get(user_id: int):
        db = get_db()
        row = db.execute("SELECT id, name, email FROM users WHERE id = ?", (user_id,)).fetchone()
        if row:
            return User(row["id"], row["name"], row["email"])
        return None

    @staticmethod
    def get_by_email(email: str):
        db = get_db()
        return db.execute(
            "SELECT id, name, email, password_hash, login_attempts, locked_until "
            "FROM users WHERE email = ?", (email,),
        ).fetchone()


@login_manager.user_loader
def load_user(user_id):
    return User.get(int(user_id))


@login_manager.unauthorized_handler
def _unauthorized():
    return jsonify({"error": "User authentication required"}), 401


def _validate_password(password: str) -> str | None:
    """Return an error message if password is too weak, else None."""
    if len(password) < 8:
        return "Password must be at least 8 characters."
    if not any(c.isupper() for c in password):
        return "Password must contain at least one uppercase letter."
    if not any(c.islower() for c in password):
        return "Password must contain at least one lowercase letter."
    if not any(c.isdigit() for c in password):
        return "Password must contain at least one digit."
    return None


def _user_payload(user) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email}


@auth_bp.route("/api/auth/login", methods=["POST"])
@limiter.limit("5 per 15 minutes")
def login():
    if current_user.is_authenticated:
        return jsonify({"user": _user_payload(current_user)})

    data = json_body()
    email = str(data.get("email", "")).strip().lower()
    password = str(data.get("password", ""))

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    row = User.get_by_email(email)
    if not row:
        return jsonify({"error": "Invalid email or password."}), 401

    locked_until = row["locked_until"]
    if locked_until:
        try:
            remaining = (datetime.fromisoformat(locked_until) - datetime.now()).total_seconds()
            if remaining > 0:
                mins = math.ceil(remaining / 60)
                log_event("login_locked", row["id"], f"email={email}")
                return jsonify({
                    "error": f"Account temporarily locked. Try again in {mins} minute(s).",
                }), 423
        except (ValueError, TypeError):
            pass

    if not row["password_hash"] or not check_password_hash(row["password_hash"], password):
        db = get_db()
        attempts = (row["login_attempts"] or 0) + 1
        if attempts >= LOCKOUT_THRESHOLD:
            db.execute(
                "UPDATE users SET login_attempts=?, locked_until=? WHERE id=?",
                (attempts, (datetime.now() + timedelta(minutes=LOCKOUT_MINUTES)).isoformat(), row["id"]),
            )
        else:
            db.execute("UPDATE users SET login_attempts=? WHERE id=?", (attempts, row["id"]))
        db.commit()
        log_event("login_failed", row["id"], f"email={email} attempts={attempts}")
        return jsonify({"error": "Invalid email or password."}), 401

    db = get_db()
    db.execute("UPDATE users SET login_attempts=0, locked_until='' WHERE id=?", (row["id"],))
    db.commit()

    user = User(row["id"], row["name"], row["email"])
    login_user(user, remember=True)
    log_event("login_success", row["id"])
    return jsonify({"user": _user_payload(user)})


@auth_bp.route("/api/auth/register", methods=["POST"])
@limiter.limit("3 per hour")
def register():
    if current_user.is_authenticated:
        return jsonify({"error": "Already signed in."}), 400

    data = json_body()
    name = str(data.get("name", "")).strip()
    email = str(data.get("email", "")).strip().lower()
    password = str(data.get("password", ""))
    confirm = str(data.get("confirm_password", password))

    if not name or not email or not password:
        return jsonify({"error": "All fields are required."}), 400

    if password != confirm:
        return jsonify({"error": "Passwords do not match."}), 400

    pw_error = _validate_password(password)
    if pw_error:
        return jsonify({"error": pw_error}), 400

    if User.get_by_email(email):
        return jsonify({"error": "An account with this email already exists."}), 409

    db = get_db()
    cur = db.execute(
        "INSERT INTO users (name, email, password_hash, created_at) VALUES (?, ?, ?, ?)",
        (name, email, generate_password_hash(password), datetime.now().isoformat()),
    )
    user_id = cur.lastrowid
    db.commit()

    log_event("register", user_id, f"email={email}")
    user = User(user_id, name, email)
    login_user(user, remember=True)
    return jsonify({"user": _user_payload(user)}), 201


@auth_bp.route("/api/auth/me")
@login_required
def me():
    from subscription_store import SubscriptionStoreDB
    payload = _user_payload(current_user)
    payload["subscription"] = SubscriptionStoreDB(current_user.id).active_subscription_type()
    return jsonify({"user": payload})


@auth_bp.route("/api/account/delete", methods=["POST"])
@login_required
def account_delete():
    """Delete the account after password confirmation."""
    uid = current_user.id
    password = str(json_body().get("password", ""))

    if not password:
        return jsonify({"error": "Password is required to confirm account deletion."}), 400

    db = get_db()
    row = db.execute("SELECT password_hash FROM users WHERE id=?", (uid,)).fetchone()
    if not row or not check_password_hash(row["password_hash"], password):
        return jsonify({"error": "Incorrect password."}), 403

    log_event("account_delete", uid)
    db.execute("DELETE FROM users WHERE id=?", (uid,))
    db.commit()
    logout_user()
    return jsonify({"success": True, "message": "Account deleted."})


@auth_bp.route("/api/auth/logout", methods=["POST"])
def logout():
    uid = current_user.id if current_user.is_authenticated else None
    log_event("logout", uid)
    logout_user()
    return jsonify({"success": True})
