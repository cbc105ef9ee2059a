"""
Plan configuration for subscription tiers.

This module is the single source of truth for plan prices, limits and
feature flags. It lives in core/ so adapters, services and API layers can
import from it without creating circular dependencies.
"""

from typing import Any, Optional

from infrastructure.config.settings import settings

# -1 means unlimited
UNLIMITED = -1

PLANS: dict[str, dict[str, Any]] = {
    "free": {
        "name": "Free",
        "price": 0,
        "currency": "USD",
        "interval": None,
        "features": {
            "characters_per_month": 500,
            "all_languages": False,
            "api_access": False,
            "commercial_use": False,
        },
    },
    "monthly": {
        "name": "Basic Plan",
        "price": 9.99,
        "currency": "USD",
        "interval": "month",
        "features": {
            "characters_per_month": 1_000_000,
            "all_languages": True,
            "api_access": False,
            "commercial_use": True,
        },
    },
    "monthly_pro": {
        "name": "Monthly Pro",
        "price": 29.99,
        "currency": "USD",
        "interval": "month",
        "features": {
            "characters_per_month": UNLIMITED,
            "all_languages": True,
            "api_access": True,
            "commercial_use": True,
        },
    },
    "lifetime": {
        "name": "Lifetime",
        "price": 99,
        "currency": "USD",
        "interval": None,  # one-time
        "features": {
            "characters_per_month": UNLIMITED,
            "all_languages": True,
            "api_access": True,
            "commercial_use": True,
        },
    },
}


def get_plan(plan_id: Optional[str]) -> Optional[dict[str, Any]]:
    """Return the plan config for *plan_id*, or None if unknown."""
    if not plan_id:
        return None
    return PLANS.get(plan_id)


def plan_name(plan_id: Optional[str], fallback: str = "Subscription") -> str:
    plan = get_plan(plan_id)
    return plan["name"] if plan else (plan_id or fallback)


def plan_price_cents(plan_id: Optional[str]) -> int:
    plan = get_plan(plan_id)
    return int(round(plan["price"] * 100)) if plan else 0


def plan_features(plan_id: Optional[str]) -> dict[str, Any]:
    """Feature flags for *plan_id*; unknown paid plans get monthly features."""
    plan = get_plan(plan_id) or PLANS["monthly"]
    return dict(plan["features"])


def plan_for_paypal_plan(paypal_plan_id: Optional[str]) -> Optional[str]:
    """Map a PayPal billing plan id (P-...) to a local plan id."""
    if not paypal_plan_id:
        return None
    mapping = {
        settings.paypal_plan_monthly: "monthly",
        settings.paypal_plan_monthly_pro: "monthly_pro",
    }
    return mapping.get(paypal_plan_id)


def plan_for_stripe_price(price_id: Optional[str]) -> Optional[str]:
    """Map a Stripe price id to a local plan id."""
    if not price_id:
        return None
    mapping = {
        settings.stripe_price_monthly: "monthly",
        settings.stripe_price_monthly_pro: "monthly_pro",
        settings.stripe_price_lifetime: "lifetime",
    }
    return mapping.get(price_id)


def plan_for_amount(amount_cents: int) -> str:
    """Best-effort plan guess from a recurring price, used by discovery."""
    if amount_cents <= 1000:
        return "monthly"
    if amount_cents <= 3500:
        return "monthly_pro"
    return "custom"
