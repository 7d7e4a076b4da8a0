"""Subscription Tiers & Feature Gating.

Stores one row per Stripe subscription and resolves the user's effective
tier from the most recently updated active row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from database import get_db


SUBSCRIPTION_TYPES = ["free", "ads-free", "local", "byok", "ditectrev"]

SUBSCRIPTION_DISPLAY = {
    "free": "Free",
    "ads-free": "Ads Free",
    "local": "Local Explanations",
    "byok": "Bring Your Own Key",
    "ditectrev": "Ditectrev",
}

# Tiers that unlock AI explanations at all.
EXPLANATION_TIERS = ("local", "byok", "ditectrev")

SUBSCRIPTION_FEATURES = {
    "free": ["practice", "exam"],
    "ads-free": ["practice", "exam", "no_ads"],
    "local": ["practice", "exam", "no_ads", "explanations_local"],
    "byok": ["practice", "exam", "no_ads", "explanations_local", "explanations_byok"],
    "ditectrev": ["all"],
}

_UPDATABLE_FIELDS = (
    "user_id", "stripe_customer_id", "stripe_price_id", "subscription_type",
    "subscription_status", "current_period_start", "current_period_end", "email",
)


class SubscriptionStoreDB:
    """DB-backed subscription records for one user."""

    def __init__(self, user_id: int):
        self.user_id = user_id

    def active_subscription(self) -> dict | None:
        """Most recently updated active subscription row, if any."""
        db = get_db()
        row = db.execute(
            "SELECT * FROM subscriptions WHERE user_id = ? AND subscription_status = 'active' "
            "ORDER BY updated_at DESC, id DESC LIMIT 1",
            (self.user_id,),
        ).fetchone()
        return dict(row) if row else None

    def active_subscription_type(self) -> str:
        sub = self.active_subscription()
        if not sub:
            return "free"
        return sub.get("subscription_type") or "free"

    def all(self) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM subscriptions WHERE user_id = ? ORDER BY updated_at DESC, id DESC",
            (self.user_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    def summary(self) -> dict[str, Any]:
        sub_type = self.active_subscription_type()
        sub = self.active_subscription() or {}
        return {
            "subscription_type": sub_type,
            "name": SUBSCRIPTION_DISPLAY.get(sub_type, sub_type),
            "status": sub.get("subscription_status", "active"),
            "current_period_end": sub.get("current_period_end"),
            "features": SUBSCRIPTION_FEATURES.get(sub_type, []),
        }


# ---------------------------------------------------------------------------
# Stripe-keyed record access (webhooks don't know the user up front)
# ---------------------------------------------------------------------------

def find_by_stripe_subscription_id(stripe_subscription_id: str) -> dict | None:
    if not stripe_subscription_id:
        return None
    db = get_db()
    row = db.execute(
        "SELECT * FROM subscriptions WHERE stripe_subscription_id = ? ORDER BY id LIMIT 1",
        (stripe_subscription_id,),
    ).fetchone()
    return dict(row) if row else None


def upsert_stripe_subscription(stripe_subscription_id: str, fields: dict[str, Any]) -> int:
    """Update the row for a Stripe subscription, or create it. Returns the row id.

    Keys missing from ``fields`` keep their stored values.
    """
    unknown = set(fields) - set(_UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
    if "subscription_type" in fields and fields["subscription_type"] not in SUBSCRIPTION_TYPES:
        raise ValueError(f"Invalid subscription type: {fields['subscription_type']}")

    db = get_db()
    now = datetime.now().isoformat()
    existing = find_by_stripe_subscription_id(stripe_subscription_id)

    if existing:
        if fields:
            assignments = ", ".join(f"{k} = ?" for k in fields)
            db.execute(
                f"UPDATE subscriptions SET {assignments}, updated_at = ? WHERE id = ?",
                (*fields.values(), now, existing["id"]),
            )
            db.commit()
        return existing["id"]

    if "user_id" not in fields:
        raise ValueError("user_id is required to create a subscription record")

    columns = ["stripe_subscription_id", *fields.keys(), "created_at", "updated_at"]
    values = [stripe_subscription_id, *fields.values(), now, now]
    cur = db.execute(
        f"INSERT INTO subscriptions ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
        values,
    )
    db.commit()
    return cur.lastrowid


def update_stripe_subscription(stripe_subscription_id: str, fields: dict[str, Any]) -> bool:
    """Update an existing row only. Returns False when no row matches."""
    if not find_by_stripe_subscription_id(stripe_subscription_id):
        return False
    upsert_stripe_subscription(stripe_subscription_id, fields)
    return True

