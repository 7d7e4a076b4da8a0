"""Stripe Payment Integration.

Handles checkout sessions, the customer portal and webhook processing.
Subscription tiers are derived from the Stripe price the customer bought.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_fixed

logger = logging.getLogger(__name__)

# Lazy import so the app boots without Stripe configured
_stripe = None

PRICE_CONFIG_KEYS: dict[str, str] = {
    "STRIPE_PRICE_ADS_FREE": "ads-free",
    "STRIPE_PRICE_LOCAL": "local",
    "STRIPE_PRICE_BYOK": "byok",
    "STRIPE_PRICE_DITECTREV": "ditectrev",
}

PERIOD_FETCH_ATTEMPTS = 3
PERIOD_FETCH_DELAY = 1.0


class WebhookError(Exception):
    """A webhook could not be processed; ``status`` tells Stripe whether to retry."""

    def __init__(self, message: str, status: int = 500):
        super().__init__(message)
        self.status = status


def _get_stripe():
    """Lazy-load the stripe module."""
    global _stripe
    if _stripe is None:
        try:
            import stripe
            _stripe = stripe
        except ImportError:
            raise RuntimeError(
                "stripe package not installed. Run: pip install stripe"
            )
    return _stripe


def is_stripe_available() -> bool:
    """Check if Stripe is configured and available."""
    from flask import current_app
    if not current_app.config.get("STRIPE_SECRET_KEY", ""):
        return False
    try:
        _get_stripe()
    except RuntimeError:
        return False
    return True


def _configure_stripe() -> None:
    """Set the Stripe API key from Flask config."""
    stripe = _get_stripe()
    from flask import current_app
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


# ---------------------------------------------------------------------------
# Price mapping: Stripe Price IDs to subscription types
# ---------------------------------------------------------------------------

def price_map() -> dict[str, str]:
    """Configured price id -> subscription type. Unset prices are skipped."""
    from flask import current_app
    mapping: dict[str, str] = {}
    for config_key, sub_type in PRICE_CONFIG_KEYS.items():
        price_id = current_app.config.get(config_key, "")
        if price_id:
            mapping[price_id] = sub_type
    return mapping


def subscription_type_for_price(price_id: str) -> str | None:
    return price_map().get(price_id or "")


# ---------------------------------------------------------------------------
# Customer management
# ---------------------------------------------------------------------------

def get_or_create_customer(user_id: int, email: str, name: str = "") -> str:
    """Get existing Stripe customer ID or create a new one.

    Stores the stripe_customer_id in the users table.
    """
    _configure_stripe()
    stripe = _get_stripe()
    from database import get_db

    db = get_db()
    row = db.execute(
        "SELECT stripe_customer_id FROM users WHERE id = ?", (user_id,)
    ).fetchone()

    if row and row["stripe_customer_id"]:
        return row["stripe_customer_id"]

    customer = stripe.Customer.create(
        email=email,
        name=name or email,
        metadata={"user_id": str(user_id)},
    )

    db.execute(
        "UPDATE users SET stripe_customer_id = ? WHERE id = ?",
        (customer.id, user_id),
    )
    db.commit()
    return customer.id


# ---------------------------------------------------------------------------
# Checkout sessions
# ---------------------------------------------------------------------------

def create_checkout_session(
    user_id: int,
    email: str,
    price_id: str,
    success_url: str = "",
    cancel_url: str = "",
) -> dict[str, Any]:
    """Create a Stripe Checkout Session for a subscription."""
    _configure_stripe()
    stripe = _get_stripe()
    from flask import current_app

    if not subscription_type_for_price(price_id):
        raise ValueError(f"Unknown price: {price_id}")

    base_url = current_app.config.get("BASE_URL", "http://localhost:5001").rstrip("/")
    if not success_url:
        success_url = f"{base_url}/profile?success=true"
    if not cancel_url:
        cancel_url = f"{base_url}/pricing?canceled=true"

    customer_id = get_or_create_customer(user_id, email)

    session = stripe.checkout.Session.create(
        customer=customer_id,
        mode="subscription",
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=success_url,
        cancel_url=cancel_url,
        client_reference_id=str(user_id),
        metadata={
            "user_id": str(user_id),
            "priceId": price_id,
        },
        subscription_data={
            "metadata": {"user_id": str(user_id)},
        },
    )

    return {
        "session_id": session.id,
        "url": session.url,
    }


# ---------------------------------------------------------------------------
# Customer portal
# ---------------------------------------------------------------------------

def create_portal_session(user_id: int, email: str) -> dict[str, str]:
    """Create a Stripe Customer Portal session for managing subscriptions."""
    _configure_stripe()
    stripe = _get_stripe()
    from flask import current_app

    customer_id = get_or_create_customer(user_id, email)
    base_url = current_app.config.get("BASE_URL", "http://localhost:5001").rstrip("/")

    session = stripe.billing_portal.Session.create(
        customer=customer_id,
        return_url=f"{base_url}/profile",
    )

    return {"url": session.url}


# ---------------------------------------------------------------------------
# Webhook handling
# ---------------------------------------------------------------------------

def verify_webhook_signature(payload: bytes, sig_header: str, secret: str):
    """Verify Stripe webhook signature and return the event object."""
    stripe = _get_stripe()
    return stripe.Webhook.construct_event(payload, sig_header, secret)


def webhook_status() -> dict[str, Any]:
    """Configuration report for GET on the webhook endpoint."""
    from flask import current_app
    cfg = current_app.config
    return {
        "message": "Stripe webhook endpoint is active",
        "timestamp": datetime.now().isoformat(),
        "config": {
            "hasSecretKey": bool(cfg.get("STRIPE_SECRET_KEY")),
            "hasWebhookSecret": bool(cfg.get("STRIPE_WEBHOOK_SECRET")),
            "configuredPrices": sorted(price_map().values()),
        },
    }


def _already_processed(event_id: str) -> bool:
    from database import get_db
    if not event_id:
        return False
    row = get_db().execute(
        "SELECT 1 FROM stripe_events WHERE event_id = ?", (event_id,)
    ).fetchone()
    return row is not None


def _mark_processed(event_id: str, event_type: str) -> None:
    from database import get_db
    if not event_id:
        return
    db = get_db()
    db.execute(
        "INSERT OR IGNORE INTO stripe_events (event_id, event_type, processed_at) VALUES (?, ?, ?)",
        (event_id, event_type, datetime.now().isoformat()),
    )
    db.commit()


def handle_webhook_event(event) -> dict[str, Any]:
    """Process a verified Stripe webhook event.

    Returns a dict describing the action taken. Raises WebhookError when
    Stripe should retry.
    """
    event_id = event.get("id", "")
    event_type = event.get("type", "")
    data_obj = event.get("data", {}).get("object", {})

    if _already_processed(event_id):
        logger.info("Duplicate Stripe event ignored: %s (%s)", event_id, event_type)
        return {"action": "duplicate", "event_type": event_type}

    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "customer.subscription.created": _handle_subscription_created,
        "customer.subscription.updated": _handle_subscription_updated,
        "customer.subscription.deleted": _handle_subscription_deleted,
    }

    handler = handlers.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type: %s", event_type)
        return {"action": "ignored", "event_type": event_type}

    result = handler(data_obj)
    _mark_processed(event_id, event_type)
    return result


def _period_from(subscription) -> tuple[int | None, int | None]:
    """Billing period in unix seconds. Newer API versions keep it on the subscription item."""
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return (int(start) if start else None, int(end) if end else None)


def _price_id_from(subscription) -> str:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return ""
    return (items[0].get("price") or {}).get("id", "")


def fetch_subscription_with_period(subscription_id: str):
    """Retrieve a subscription, retrying while its period dates aren't populated yet.

    Returns the last retrieved subscription even if the dates never appear.
    """
    stripe = _get_stripe()
    retryer = Retrying(
        stop=stop_after_attempt(PERIOD_FETCH_ATTEMPTS),
        wait=wait_fixed(PERIOD_FETCH_DELAY),
        retry=retry_if_result(lambda sub: None in _period_from(sub)),
        retry_error_callback=lambda state: state.outcome.result(),
    )
    return retryer(stripe.Subscription.retrieve, subscription_id)


def _customer_email(customer_id: str) -> str | None:
    if not customer_id:
        return None
    customer = _get_stripe().Customer.retrieve(customer_id)
    if customer.get("deleted"):
        return None
    return customer.get("email")


def _handle_checkout_completed(session) -> dict[str, Any]:
    """Record the subscription bought through Checkout against the signed-in user."""
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id")
    if not user_id:
        logger.error("checkout.session.completed missing user_id in metadata: session=%s", session.get("id"))
        raise WebhookError("No user ID found", status=400)
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        logger.error("checkout.session.completed has non-numeric user_id %r: session=%s", user_id, session.get("id"))
        raise WebhookError("Invalid user ID", status=400) from None

    subscription_id = session.get("subscription") or ""
    if not subscription_id:
        logger.warning("checkout.session.completed without subscription: session=%s", session.get("id"))
        return {"action": "skipped", "reason": "no subscription"}

    price_id = metadata.get("priceId", "")
    sub_type = subscription_type_for_price(price_id) or "free"
    customer_id = session.get("customer") or ""
    email = session.get("customer_email") or (session.get("customer_details") or {}).get("email") or ""

    subscription = fetch_subscription_with_period(subscription_id)
    period_start, period_end = _period_from(subscription)

    fields: dict[str, Any] = {
        "user_id": user_id,
        "stripe_customer_id": customer_id,
        "stripe_price_id": price_id,
        "subscription_type": sub_type,
        "subscription_status": subscription.get("status") or "active",
        "email": email,
    }
    if period_start and period_end:
        fields["current_period_start"] = period_start
        fields["current_period_end"] = period_end
    else:
        logger.error("Could not get period dates for subscription %s", subscription_id)

    from subscription_store import upsert_stripe_subscription
    try:
        row_id = upsert_stripe_subscription(subscription_id, fields)
    except sqlite3.Error as exc:
        logger.exception("Database error saving subscription %s", subscription_id)
        raise WebhookError(f"Database error: {exc}", status=500) from exc

    logger.info("Subscription activated: user=%s type=%s sub=%s", user_id, sub_type, subscription_id)
    return {"action": "subscription_activated", "user_id": user_id, "subscription_type": sub_type, "record_id": row_id}


def _sync_subscription(subscription, only_active_type: bool) -> dict[str, Any]:
    subscription_id = subscription.get("id", "")
    status = subscription.get("status", "")
    sub_type = subscription_type_for_price(_price_id_from(subscription)) or "free"
    if only_active_type and status != "active":
        sub_type = "free"

    period_start, period_end = _period_from(subscription)
    fields: dict[str, Any] = {
        "subscription_status": status,
        "subscription_type": sub_type,
        "current_period_start": period_start,
        "current_period_end": period_end,
    }
    email = _customer_email(subscription.get("customer") or "")
    if email:
        fields["email"] = email

    from subscription_store import update_stripe_subscription
    try:
        updated = update_stripe_subscription(subscription_id, fields)
    except sqlite3.Error as exc:
        logger.exception("Database error updating subscription %s", subscription_id)
        raise WebhookError(f"Database error: {exc}", status=500) from exc

    if not updated:
        logger.warning("Subscription not found for Stripe subscription ID: %s", subscription_id)
        return {"action": "not_found", "subscription_id": subscription_id}
    return {"action": "subscription_synced", "subscription_id": subscription_id, "status": status, "subscription_type": sub_type}


def _handle_subscription_created(subscription) -> dict[str, Any]:
    return _sync_subscription(subscription, only_active_type=False)


def _handle_subscription_updated(subscription) -> dict[str, Any]:
    """Upgrades, downgrades, renewals and payment failures all arrive here."""
    return _sync_subscription(subscription, only_active_type=True)


def _handle_subscription_deleted(subscription) -> dict[str, Any]:
    """Handle subscription cancellation: the user drops back to free."""
    subscription_id = subscription.get("id", "")
    from subscription_store import update_stripe_subscription
    try:
        updated = update_stripe_subscription(
            subscription_id, {"subscription_status": "canceled", "subscription_type": "free"},
        )
    except sqlite3.Error as exc:
        logger.exception("Database error canceling subscription %s", subscription_id)
        raise WebhookError(f"Database error: {exc}", status=500) from exc

    if not updated:
        logger.warning("Subscription not found for Stripe subscription ID: %s", subscription_id)
        return {"action": "not_found", "subscription_id": subscription_id}
    logger.info("Subscription cancelled: sub=%s", subscription_id)
    return {"action": "subscription_cancelled", "subscription_id": subscription_id}
