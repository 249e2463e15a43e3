"""Per-device tracking of reports submitted without an account."""

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from limits import ANONYMOUS_POST_PERIOD, MAX_ANONYMOUS_POSTS
from models import AnonymousPost
from time_window import Window, count_recent

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnonymousPostTracker:
    """
    Append-only history of anonymous posts for one device.

    Records are never deleted; posts older than the rolling window simply stop
    counting against the quota when `remaining` is computed.
    """

    def __init__(self, device_id: str, store, clock: Callable[[], datetime] = utcnow):
        self.device_id = device_id
        self.store = store
        self.clock = clock

    def posts(self) -> List[AnonymousPost]:
        return self.store.get_anonymous_posts(self.device_id)

    def record_post(self, post_id: str) -> AnonymousPost:
        """
        Append a post stamped with the current instant.

        Does not check the quota; callers must check `can_post` first.
        """
        post = AnonymousPost(id=post_id, timestamp=self.clock())
        self.store.append_anonymous_post(self.device_id, post)
        logger.info("Recorded anonymous post %s for device %s", post_id, self.device_id)
        return post

    def remaining(
        self,
        window: Window = ANONYMOUS_POST_PERIOD,
        limit: int = MAX_ANONYMOUS_POSTS,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Posts left in the rolling window.

        The value is signed: it goes negative when posts were recorded past the
        limit. Clamp before showing it to a user.
        """
        if now is None:
            now = self.clock()
        return limit - count_recent(self.posts(), window, now)

    def can_post(self) -> bool:
        return self.remaining() > 0
