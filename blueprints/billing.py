"""Subscription and Stripe payment routes."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user

from audit import log_event
from helpers import current_user_id, json_body

logger = logging.getLogger(__name__)

bp = Blueprint("billing", __name__)


@bp.record_once
def _exempt_webhook_from_csrf(state: Any) -> None:
    """Exempt the Stripe webhook endpoint from CSRF protection."""
    csrf = state.app.extensions.get("csrf")
    if csrf:
        csrf.exempt(api_stripe_webhook)


# ---------------------------------------------------------------------------
# Subscription endpoints
# ---------------------------------------------------------------------------

@bp.route("/api/subscription/current")
@login_required
def api_subscription_current() -> Any:
    from subscription_store import SubscriptionStoreDB
    from explanation_service import ExplanationService

    store = SubscriptionStoreDB(current_user_id())
    summary = store.summary()
    summary["explanation_providers"] = ExplanationService().get_available_providers(summary["subscription_type"])
    return jsonify(summary)


# ---------------------------------------------------------------------------
# Stripe Checkout
# ---------------------------------------------------------------------------

@bp.route("/api/stripe/create-checkout-session", methods=["POST"])
@login_required
def api_create_checkout_session() -> tuple[Any, int] | Any:
    """Create a Stripe Checkout Session for the given price."""
    from stripe_integration import is_stripe_available, create_checkout_session

    if not is_stripe_available():
        return jsonify({"error": "Payments not configured"}), 503

    price_id = str(json_body().get("priceId", "")).strip()
    if not price_id:
        return jsonify({"error": "priceId required"}), 400

    try:
        result = create_checkout_session(
            user_id=current_user.id,
            email=current_user.email,
            price_id=price_id,
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        logger.exception("Stripe checkout error")
        return jsonify({"error": "Failed to create checkout session"}), 500

    log_event("checkout_started", current_user.id, f"price={price_id}")
    return jsonify(result)


# ---------------------------------------------------------------------------
# Stripe Customer Portal
# ---------------------------------------------------------------------------

@bp.route("/api/billing/portal", methods=["POST"])
@login_required
def api_billing_portal() -> tuple[Any, int] | Any:
    """Create a Stripe Customer Portal session."""
    from stripe_integration import is_stripe_available, create_portal_session

    if not is_stripe_available():
        return jsonify({"error": "Payments not configured"}), 503

    try:
        result = create_portal_session(
            user_id=current_user.id,
            email=current_user.email,
        )
        return jsonify(result)
    except Exception:
        logger.exception("Stripe portal error")
        return jsonify({"error": "Payment service error"}), 500


# ---------------------------------------------------------------------------
# Stripe Webhook
# ---------------------------------------------------------------------------

@bp.route("/api/stripe/webhook", methods=["GET"])
def api_stripe_webhook_status() -> Any:
    from stripe_integration import webhook_status
    return jsonify(webhook_status())


@bp.route("/api/stripe/webhook", methods=["POST"])
def api_stripe_webhook() -> tuple[Any, int] | Any:
    """Handle Stripe webhook events.

    This endpoint is NOT behind login_required because Stripe calls it directly.
    Authentication is via webhook signature verification.
    CSRF is exempt; the signature is the authentication.
    """
    from stripe_integration import (
        WebhookError, handle_webhook_event, is_stripe_available, verify_webhook_signature,
    )

    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature", "")
    if not sig_header:
        return jsonify({"error": "Missing stripe-signature header"}), 400

    if not is_stripe_available():
        return jsonify({"error": "Stripe secret key not configured"}), 500

    webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET", "")
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        return jsonify({"error": "Webhook secret not configured"}), 500

    try:
        event = verify_webhook_signature(payload, sig_header, webhook_secret)
    except ValueError:
        logger.warning("Invalid webhook payload")
        return jsonify({"error": "Webhook Error: invalid payload"}), 400
    except Exception as e:
        if "SignatureVerificationError" in type(e).__name__:
            logger.warning("Invalid webhook signature")
            return jsonify({"error": f"Webhook Error: {e}"}), 400
        raise

    try:
        result = handle_webhook_event(event)
    except WebhookError as e:
        return jsonify({"error": str(e), "received": True}), e.status
    except Exception as e:
        logger.exception("Webhook processing error: type=%s", event.get("type"))
        return jsonify({"error": "Webhook processing failed", "details": str(e)}), 500

    logger.info("Webhook processed: %s -> %s", event.get("type"), result.get("action"))
    return jsonify({"received": True, **result})
