"""Profile, explanation preferences and provider API keys."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from flask import Blueprint, jsonify
from flask_login import current_user, login_required

from audit import log_event
from database import get_db
from extensions import ServiceManager
from helpers import current_user_id, json_body
from settings_store import UserSettingsStoreDB
from subscription_store import SubscriptionStoreDB

logger = logging.getLogger(__name__)

bp = Blueprint("profile", __name__)


def _profile_payload(uid: int) -> dict[str, Any]:
    settings = UserSettingsStoreDB(uid)
    subscription = SubscriptionStoreDB(uid).active_subscription_type()
    return {
        "id": uid,
        "email": current_user.email,
        "name": current_user.name,
        "subscription": subscription,
        "apiKeys": settings.masked_api_keys(),
        "preferences": {"explanationProvider": settings.explanation_provider()},
        "availableProviders": ServiceManager.get_explanation_service().get_available_providers(subscription),
    }


@bp.route("/api/profile")
@login_required
def api_profile() -> Any:
    return jsonify(_profile_payload(current_user_id()))


@bp.route("/api/profile", methods=["POST"])
@login_required
def api_profile_update() -> tuple[Any, int] | Any:
    name = str(json_body().get("name", "")).strip()
    if not name:
        return jsonify({"error": "Name is required."}), 400
    if len(name) > 100:
        return jsonify({"error": "Name must be 100 characters or fewer."}), 400

    db = get_db()
    db.execute("UPDATE users SET name = ? WHERE id = ?", (name, current_user.id))
    db.commit()
    current_user.name = name
    return jsonify({"success": True, "profile": _profile_payload(current_user.id)})


@bp.route("/api/profile/api-keys", methods=["POST"])
@login_required
def api_profile_api_keys() -> tuple[Any, int] | Any:
    api_keys = json_body().get("apiKeys")
    if not isinstance(api_keys, dict):
        return jsonify({"error": "apiKeys must be an object"}), 400
    if any(v is not None and not isinstance(v, str) for v in api_keys.values()):
        return jsonify({"error": "API keys must be strings"}), 400

    store = UserSettingsStoreDB(current_user.id)
    try:
        updated = store.set_api_keys({k: v or "" for k, v in api_keys.items()})
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    log_event("api_keys_updated", current_user.id, f"providers={','.join(updated)}")
    return jsonify({
        "success": True,
        "updated": updated,
        "apiKeys": store.masked_api_keys(),
        "updated_at": datetime.now().isoformat(),
    })


@bp.route("/api/profile/preferences", methods=["POST"])
@login_required
def api_profile_preferences() -> tuple[Any, int] | Any:
    provider = str(json_body().get("explanationProvider", "")).strip()
    if not provider:
        return jsonify({"error": "explanationProvider is required"}), 400

    store = UserSettingsStoreDB(current_user.id)
    try:
        store.set_explanation_provider(provider)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    return jsonify({"success": True, "preferences": {"explanationProvider": provider}})
