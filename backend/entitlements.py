"""
Posting entitlements: who may post, how many posts remain, and subscription changes.

The engine is built per request from the caller's identity. It owns no records
itself: registered users are read fresh from the store on every query, and
anonymous devices go through their AnonymousPostTracker. Every accessor is
deny-biased; an internal fault is logged and reported as "no posts left"
rather than raised into the submission flow.
"""

import asyncio
import logging
import os
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Union
from uuid import uuid4

import store as store_module
from anonymous_posts import AnonymousPostTracker, utcnow
from limits import MAX_ANONYMOUS_POSTS, get_post_limit_for_tier, is_unlimited
from models import AnonymousIdentity, AnonymousPost, EntitlementSnapshot, Identity, User
from subscriptions import VALID_TIERS, build_subscription, current_usage_period_start

logger = logging.getLogger(__name__)

PostCount = Union[int, float]

UPGRADE_DELAY_SECONDS = float(os.getenv("UPGRADE_DELAY_SECONDS", "1.5"))

# Quota lock: how long to wait for a concurrent submission from the same identity
_LOCK_TTL_SECONDS = 10
_LOCK_ATTEMPTS = 20
_LOCK_RETRY_SECONDS = 0.05


class UsageResetPolicy(str, Enum):
    """How the free-tier `posts_this_month` counter is reset."""

    # Never reset automatically; only an explicit forced reset clears it.
    CUMULATIVE = "cumulative"
    # Reset at each 30-day anniversary of the subscription start date.
    ANNIVERSARY = "anniversary"


def usage_reset_policy_from_env() -> UsageResetPolicy:
    raw = os.getenv("USAGE_RESET_POLICY", UsageResetPolicy.CUMULATIVE.value).strip().lower()
    try:
        return UsageResetPolicy(raw)
    except ValueError:
        logger.warning("Unknown USAGE_RESET_POLICY %r, using cumulative", raw)
        return UsageResetPolicy.CUMULATIVE


class PaymentProcessor(Protocol):
    async def charge(self, user: User, tier: str, payment_method: Optional[str]) -> bool:
        ...


class SimulatedPaymentProcessor:
    """
    Stands in for the payment provider round trip.

    Waits `delay_seconds` and then approves the charge, or declines it when
    constructed with `fail=True`.
    """

    def __init__(self, delay_seconds: Optional[float] = None, fail: bool = False):
        self.delay_seconds = UPGRADE_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self.fail = fail

    async def charge(self, user: User, tier: str, payment_method: Optional[str]) -> bool:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if self.fail:
            logger.info("Simulated payment declined for user %s (%s)", user.id, tier)
            return False
        return True


class EntitlementEngine:
    """
    Decides remaining posts, post limit and post permission for one identity.

    | Identity   | Tier            | remaining                  | limit | can_post      |
    |------------|-----------------|----------------------------|-------|---------------|
    | anonymous  | n/a             | 2 - recent anonymous posts | 2     | remaining > 0 |
    | registered | guest           | 0                          | 0     | False         |
    | registered | free            | 10 - posts_this_month      | 10    | remaining > 0 |
    | registered | monthly/yearly  | inf                        | inf   | True          |
    """

    def __init__(
        self,
        identity: Identity,
        store=None,
        clock: Callable[[], datetime] = utcnow,
        payment_processor: Optional[PaymentProcessor] = None,
        reset_policy: Optional[UsageResetPolicy] = None,
    ):
        self.identity = identity
        self.store = store if store is not None else store_module.get_store()
        self.clock = clock
        self.payment_processor = payment_processor or SimulatedPaymentProcessor()
        self.reset_policy = reset_policy or usage_reset_policy_from_env()
        self._tracker: Optional[AnonymousPostTracker] = None

    @property
    def is_anonymous(self) -> bool:
        return isinstance(self.identity, AnonymousIdentity)

    @property
    def tracker(self) -> AnonymousPostTracker:
        if not self.is_anonymous:
            raise AttributeError("Registered identities have no anonymous post tracker")
        if self._tracker is None:
            self._tracker = AnonymousPostTracker(self.identity.device_id, self.store, self.clock)
        return self._tracker

    def _lock_key(self) -> str:
        if self.is_anonymous:
            return f"quota:device:{self.identity.device_id}"
        return f"quota:user:{self.identity.user_id}"

    # --- usage period ---
    def _current_user(self) -> Optional[User]:
        """
        Load the registered user, rolling the free-tier counter over first when
        the anniversary policy says a new usage period has started.
        """
        user = self.store.get_user(self.identity.user_id)
        if user is None:
            return None
        if self.reset_policy is UsageResetPolicy.ANNIVERSARY and user.subscription.tier == "free":
            user = self._roll_usage_period(user)
        return user

    def _roll_usage_period(self, user: User) -> User:
        period_start = current_usage_period_start(user.subscription.start_date, self.clock())
        if user.usage_period_start is None:
            # No record of when existing posts happened; start tracking from here.
            return self.store.update_user(user.id, usage_period_start=period_start)
        if period_start > user.usage_period_start:
            logger.info("Resetting monthly usage for user %s (was %d)", user.id, user.posts_this_month)
            return self.store.update_user(user.id, posts_this_month=0, usage_period_start=period_start)
        return user

    # --- queries ---
    def _remaining_posts(self) -> PostCount:
        if self.is_anonymous:
            return self.tracker.remaining()
        user = self._current_user()
        if user is None:
            return 0
        limit = get_post_limit_for_tier(user.subscription.tier)
        if is_unlimited(limit):
            return limit
        if user.subscription.tier == "free":
            return limit - user.posts_this_month
        return 0

    def _post_limit(self) -> PostCount:
        if self.is_anonymous:
            return MAX_ANONYMOUS_POSTS
        user = self.store.get_user(self.identity.user_id)
        if user is None:
            return 0
        return get_post_limit_for_tier(user.subscription.tier)

    def remaining_posts(self) -> PostCount:
        """
        Posts left for this identity; `math.inf` for unlimited tiers.

        Signed: may be negative if posts were recorded past the limit.
        Returns 0 on any internal fault.
        """
        try:
            return self._remaining_posts()
        except Exception:
            logger.exception("Failed to compute remaining posts for %s", self.identity)
            return 0

    def post_limit(self) -> PostCount:
        try:
            return self._post_limit()
        except Exception:
            logger.exception("Failed to compute post limit for %s", self.identity)
            return 0

    def can_post(self) -> bool:
        remaining = self.remaining_posts()
        return is_unlimited(remaining) or remaining > 0

    def snapshot(self) -> EntitlementSnapshot:
        remaining = self.remaining_posts()
        return EntitlementSnapshot(
            remaining_posts=remaining,
            post_limit=self.post_limit(),
            can_post=is_unlimited(remaining) or remaining > 0,
        )

    # --- mutations ---
    def add_anonymous_post(self, post_id: str) -> Optional[AnonymousPost]:
        """
        Record an anonymous submission for this device.

        Returns:
            The stored AnonymousPost, or None for registered identities and on
            storage faults.
        """
        if not self.is_anonymous:
            logger.warning("add_anonymous_post called for registered user %s", self.identity.user_id)
            return None
        try:
            return self.tracker.record_post(post_id)
        except Exception:
            logger.exception("Failed to record anonymous post %s", post_id)
            return None

    def _record_registered_post(self) -> bool:
        user = self._current_user()
        if user is None:
            return False
        # Paid tiers are not metered and guest is blocked upstream.
        if user.subscription.tier != "free":
            return False
        self.store.update_user(user.id, posts_this_month=user.posts_this_month + 1)
        return True

    def record_post(self) -> bool:
        """
        Count one post against a free-tier user's monthly allowance.

        Anonymous posts are recorded through `add_anonymous_post`, which needs the
        report id, so this is a no-op for anonymous identities. Premium and guest
        tiers are untouched.

        Returns:
            bool: True if a counter was incremented.
        """
        if self.is_anonymous:
            return False
        try:
            return self._record_registered_post()
        except Exception:
            logger.exception("Failed to record post for user %s", self.identity.user_id)
            return False

    def _record_consumption(self, post_id: Optional[str]) -> bool:
        """
        Record one granted post for this identity.

        Returns:
            bool: True when the use is on record, or the tier is unmetered.
            False when the write failed.
        """
        if self.is_anonymous:
            return self.add_anonymous_post(post_id) is not None
        try:
            user = self._current_user()
        except Exception:
            logger.exception("Failed to load user %s to record a post", self.identity.user_id)
            return False
        if user is None:
            return False
        if is_unlimited(get_post_limit_for_tier(user.subscription.tier)):
            return True
        return self.record_post()

    def try_consume_post(
        self,
        post_id: Optional[str] = None,
        publish: Optional[Callable[[], Any]] = None,
        unpublish: Optional[Callable[[], Any]] = None,
    ) -> bool:
        """
        Check the quota and record one post as a single step.

        Holds a per-identity store lock so two submissions racing from the same
        device or account cannot both pass the check. Anonymous identities need
        `post_id` (the id of the report being created).

        When given, `publish` runs under the lock after the check and before
        anything is recorded; if it raises, the exception propagates and no
        quota is used. If recording then fails, `unpublish` is called and the
        post is denied.

        Returns:
            bool: True if the post was allowed and recorded.
        """
        if self.is_anonymous and not post_id:
            raise ValueError("post_id is required for anonymous submissions")

        key = self._lock_key()
        owner = uuid4().hex
        try:
            acquired = False
            for _ in range(_LOCK_ATTEMPTS):
                if self.store.acquire_lock(key, owner, _LOCK_TTL_SECONDS):
                    acquired = True
                    break
                time.sleep(_LOCK_RETRY_SECONDS)
            if not acquired:
                logger.warning("Quota lock %s busy, denying post", key)
                return False
        except Exception:
            logger.exception("Failed to acquire quota lock %s", key)
            return False

        try:
            if not self.can_post():
                return False
            if publish is not None:
                publish()
            if self._record_consumption(post_id):
                return True
            logger.error("Could not record post for %s, denying", self.identity)
            if unpublish is not None:
                unpublish()
            return False
        finally:
            try:
                self.store.release_lock(key, owner)
            except Exception:
                logger.exception("Failed to release quota lock %s", key)

    async def upgrade_subscription(self, tier: str, payment_method: Optional[str] = None) -> bool:
        """
        Move a registered user onto `tier` after charging them.

        Does not touch `posts_this_month`; paid tiers are unmetered so prior usage
        stops mattering.

        Returns:
            bool: False for anonymous identities, unknown tiers, missing users,
            declined payments and storage faults; True once the new subscription
            is stored.
        """
        if self.is_anonymous:
            logger.info("Rejecting subscription upgrade for anonymous device %s", self.identity.device_id)
            return False
        if tier not in VALID_TIERS:
            logger.warning("Rejecting upgrade to unknown tier %r", tier)
            return False

        user_id = self.identity.user_id
        try:
            user = self.store.get_user(user_id)
            if user is None:
                return False
            if not await self.payment_processor.charge(user, tier, payment_method):
                logger.info("Payment declined for user %s upgrading to %s", user_id, tier)
                return False
            subscription = build_subscription(tier, self.clock(), payment_method)
            self.store.update_user(user_id, subscription=subscription)
        except Exception:
            logger.exception("Subscription upgrade failed for user %s", user_id)
            return False

        logger.info("User %s upgraded to %s", user_id, tier)
        return True

    def reset_monthly_usage(self, force: bool = False) -> bool:
        """
        Reset a free-tier user's monthly counter.

        With `force` the counter is cleared unconditionally (admin reset).
        Otherwise the configured policy decides: cumulative never resets,
        anniversary resets once the current 30-day cycle has moved on.

        Returns:
            bool: True if the counter was cleared.
        """
        if self.is_anonymous:
            return False
        try:
            user = self.store.get_user(self.identity.user_id)
            if user is None:
                return False
            if force:
                period_start = current_usage_period_start(user.subscription.start_date, self.clock())
                self.store.update_user(user.id, posts_this_month=0, usage_period_start=period_start)
                return True
            if self.reset_policy is not UsageResetPolicy.ANNIVERSARY or user.subscription.tier != "free":
                return False
            before = user.posts_this_month
            return self._roll_usage_period(user).posts_this_month == 0 and before != 0
        except Exception:
            logger.exception("Failed to reset monthly usage for user %s", self.identity.user_id)
            return False
