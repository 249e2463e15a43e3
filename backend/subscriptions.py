"""Helpers for building and inspecting subscription records."""

from datetime import datetime, timedelta
from typing import Optional

from models import Subscription

PREMIUM_TIERS = frozenset({"monthly", "yearly"})
VALID_TIERS = frozenset({"guest", "free", "monthly", "yearly"})

TIER_DURATIONS = {
    "monthly": timedelta(days=30),
    "yearly": timedelta(days=365),
}

DEFAULT_PAYMENT_METHOD = "Google Pay"
USAGE_PERIOD = timedelta(days=30)


def is_premium(subscription: Optional[Subscription]) -> bool:
    return subscription is not None and subscription.tier in PREMIUM_TIERS


def build_subscription(tier: str, now: datetime, payment_method: Optional[str] = None) -> Subscription:
    """
    Create the subscription record stored after a successful upgrade.

    Paid tiers get an end date 30 or 365 days out; other tiers are open-ended.

    Raises:
        ValueError: If `tier` is not a known tier.
    """
    if tier not in VALID_TIERS:
        raise ValueError(f"Unknown subscription tier: {tier}")
    duration = TIER_DURATIONS.get(tier)
    return Subscription(
        tier=tier,
        start_date=now,
        end_date=now + duration if duration else None,
        auto_renew=True,
        payment_method=payment_method or DEFAULT_PAYMENT_METHOD,
    )


def is_expired(subscription: Subscription, now: datetime) -> bool:
    """True once a dated subscription has reached its end date."""
    return subscription.end_date is not None and subscription.end_date <= now


def current_usage_period_start(anchor: datetime, now: datetime, period: timedelta = USAGE_PERIOD) -> datetime:
    """
    Return the start of the usage cycle containing `now`.

    Cycles are fixed-length periods counted forward from `anchor` (normally the
    subscription start date). Before the anchor the anchor itself is returned.
    """
    if now <= anchor:
        return anchor
    cycles_passed = (now - anchor) // period
    return anchor + cycles_passed * period
