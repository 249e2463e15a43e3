"""
Posting quota limits per identity and subscription tier.

Anonymous devices get a small rolling-window allowance, free accounts a
monthly cap, and paid tiers are unmetered. Values can be tuned through the
environment for staging.
"""

import math
import os
from datetime import timedelta
from typing import Dict, Union

# Anonymous devices: posts allowed per rolling period
MAX_ANONYMOUS_POSTS = int(os.getenv("MAX_ANONYMOUS_POSTS", "2"))
ANONYMOUS_POST_PERIOD = timedelta(days=int(os.getenv("ANONYMOUS_POST_PERIOD_DAYS", "30")))

# Free accounts: posts allowed per month
MAX_FREE_POSTS = int(os.getenv("MAX_FREE_POSTS", "10"))

UNLIMITED = math.inf

TIER_POST_LIMITS: Dict[str, Union[int, float]] = {
    "guest": 0,
    "free": MAX_FREE_POSTS,
    "monthly": UNLIMITED,
    "yearly": UNLIMITED,
}


def get_post_limit_for_tier(tier: str) -> Union[int, float]:
    """
    Look up the post limit for a subscription tier.

    Unknown tiers get no posts.
    """
    return TIER_POST_LIMITS.get(tier, 0)


def is_unlimited(limit: Union[int, float]) -> bool:
    return limit == UNLIMITED
