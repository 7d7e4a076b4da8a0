"""AI explanation routes."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify
from flask_login import current_user

from ai_providers import AIProviderError, PROVIDERS
from ai_resilience import CircuitOpenError
from extensions import ServiceManager, limiter
from explanation_service import ExplanationRequest, provider_display_name
from helpers import json_body
from settings_store import BYOK_PROVIDERS, UserSettingsStoreDB
from subscription_store import EXPLANATION_TIERS, SubscriptionStoreDB

logger = logging.getLogger(__name__)

bp = Blueprint("explanations", __name__)

_DIRECT_PROVIDERS = (*BYOK_PROVIDERS, "ditectrev")


def _question_and_answers(data: dict[str, Any]) -> tuple[str, list[str]] | None:
    question = data.get("question")
    answers = data.get("correctAnswers")
    if not isinstance(question, str) or not question.strip():
        return None
    if not isinstance(answers, list) or not answers:
        return None
    return question, [str(a) for a in answers]


@bp.route("/api/explanations", methods=["POST"])
@limiter.limit("30 per minute")
def api_explanations() -> tuple[Any, int] | Any:
    parsed = _question_and_answers(json_body())
    if parsed is None:
        return jsonify({"error": "Question and correct answers are required"}), 400
    question, answers = parsed

    if not current_user.is_authenticated:
        return jsonify({"error": "User authentication required"}), 401

    subscription = SubscriptionStoreDB(current_user.id).active_subscription_type()
    if subscription not in EXPLANATION_TIERS:
        return jsonify({
            "error": "Your subscription does not include AI explanations. Please upgrade to access this feature.",
        }), 403

    settings = UserSettingsStoreDB(current_user.id)
    provider = settings.explanation_provider()

    if provider == "ditectrev" and subscription != "ditectrev":
        return jsonify({"error": "Ditectrev AI is only available with the Ditectrev subscription."}), 403

    if provider in BYOK_PROVIDERS and subscription not in ("byok", "ditectrev"):
        return jsonify({"error": f"{provider} requires a BYOK or Ditectrev subscription."}), 403

    api_keys = settings.api_keys()
    if provider in BYOK_PROVIDERS and not api_keys.get(provider):
        return jsonify({
            "error": f"Please add your {provider_display_name(provider)} API key in your profile settings.",
        }), 400

    req = ExplanationRequest(
        question=question,
        correct_answers=answers,
        subscription=subscription,
        provider=provider,
        api_keys=api_keys,
    )
    try:
        explanation = ServiceManager.get_explanation_service().generate_explanation(req)
    except (AIProviderError, CircuitOpenError, PermissionError, ValueError) as e:
        logger.error("Error generating explanation: provider=%s error=%s", provider, e)
        return jsonify({"error": str(e) or "Failed to generate explanation"}), 500

    return jsonify({"explanation": explanation, "provider": provider})


@bp.route("/api/ai/<provider>", methods=["POST"])
@limiter.limit("20 per minute")
def api_ai_provider(provider: str) -> tuple[Any, int] | Any:
    """Call one provider directly. BYOK providers take the caller's key in the body."""
    if provider not in _DIRECT_PROVIDERS:
        return jsonify({"error": f"Unknown AI provider: {provider}"}), 404

    data = json_body()
    parsed = _question_and_answers(data)
    if parsed is None:
        return jsonify({"error": "Question and correct answers are required"}), 400
    question, answers = parsed

    api_key = None
    if provider in BYOK_PROVIDERS:
        api_key = str(data.get("apiKey") or "").strip()
        if not api_key:
            return jsonify({"error": f"{PROVIDERS[provider].label} API key is required"}), 400
    else:
        if not current_user.is_authenticated:
            return jsonify({"error": "User authentication required"}), 401
        if SubscriptionStoreDB(current_user.id).active_subscription_type() != "ditectrev":
            return jsonify({"error": "Ditectrev subscription required"}), 403

    try:
        explanation = PROVIDERS[provider]().generate_explanation(question, answers, api_key)
    except AIProviderError as e:
        logger.error("Error with %s: %s (%s)", provider, e, e.type)
        status = 401 if e.type == "auth" else 429 if e.type == "rate_limit" else 500
        return jsonify({"error": str(e), "type": e.type}), status
    except CircuitOpenError as e:
        return jsonify({"error": str(e)}), 503

    return jsonify({"explanation": explanation})
