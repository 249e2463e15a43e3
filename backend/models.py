"""Domain models for the sighting reports backend."""

from datetime import datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

SubscriptionTier = Literal["guest", "free", "monthly", "yearly"]
AuthProvider = Literal["email", "google", "apple"]


class Subscription(BaseModel):
    """
    A user's current tier and its validity interval.

    Attributes:
        tier: Active tier; exactly one per user.
        start_date: Instant the tier became active.
        end_date: Instant the tier expires (set for monthly/yearly).
        auto_renew: Whether the tier renews at end_date.
        payment_method: Human-readable payment method label.
    """

    tier: SubscriptionTier
    start_date: datetime
    end_date: Optional[datetime] = None
    auto_renew: Optional[bool] = None
    payment_method: Optional[str] = None


class User(BaseModel):
    """
    Represents a registered account.

    `posts_this_month` only grows for free-tier users; premium tiers are not
    metered. `usage_period_start` records which usage cycle the counter belongs
    to when the anniversary reset policy is active.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    username: str
    email: str
    avatar: Optional[str] = None
    created_at: datetime
    subscription: Subscription
    posts_this_month: int = 0
    auth_provider: Optional[AuthProvider] = None
    provider_user_id: Optional[str] = None
    usage_period_start: Optional[datetime] = None


class AnonymousPost(BaseModel):
    """A report submitted without an account, kept per device."""

    id: str
    timestamp: datetime


class AnonymousIdentity(BaseModel):
    """No account; quota tracked by device identifier."""

    kind: Literal["anonymous"] = "anonymous"
    device_id: str


class RegisteredIdentity(BaseModel):
    """Authenticated account; the user record is read from the store on demand."""

    kind: Literal["registered"] = "registered"
    user_id: str


Identity = Union[AnonymousIdentity, RegisteredIdentity]


class EntitlementSnapshot(BaseModel):
    """
    Derived, never-stored view of the current identity's posting entitlement.

    `remaining_posts` and `post_limit` are `math.inf` for unlimited tiers.
    `remaining_posts` is signed and may be negative when a caller ignored
    `can_post`.
    """

    remaining_posts: float
    post_limit: float
    can_post: bool

    @property
    def unlimited(self) -> bool:
        return self.post_limit == float("inf")

    @property
    def display_remaining(self) -> float:
        return max(0, self.remaining_posts)


class Agency(BaseModel):
    id: str
    name: str
    abbreviation: str
    color: str
    icon: str


class MediaItem(BaseModel):
    uri: str
    type: Literal["image", "video"]


class Coordinates(BaseModel):
    latitude: float
    longitude: float
    latitude_delta: float = 0.1
    longitude_delta: float = 0.1


class ReportCreate(BaseModel):
    """Fields a client supplies when submitting a sighting."""

    agency_id: str
    latitude: float
    longitude: float
    description: str = Field(min_length=1)
    media: List[MediaItem] = []
    user_id: Optional[str] = None
    username: Optional[str] = None


class Report(BaseModel):
    """
    A single law-enforcement sighting.

    Attributes:
        id: Generated identifier (`report-<hex>`)
        agency_id: Agency catalogue id
        latitude: Sighting latitude
        longitude: Sighting longitude
        description: Free-text description
        timestamp: Creation instant
        upvotes: Community confirmations
        verified: Moderator verification flag
        media: Attached photos/videos
        user_id: Author id when posted from an account
        username: Author display name when posted from an account
    """

    id: str
    agency_id: str
    latitude: float
    longitude: float
    description: str
    timestamp: datetime
    upvotes: int = 0
    verified: bool = False
    media: List[MediaItem] = []
    user_id: Optional[str] = None
    username: Optional[str] = None


class Session(BaseModel):
    """An authenticated session issued on login, registration or social sign-in."""

    token: str
    user_id: str
    created_at: datetime
